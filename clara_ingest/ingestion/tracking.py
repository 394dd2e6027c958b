"""SQLite content tracking store and run metrics history."""

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from clara_ingest.core.errors import TrackingWriteError
from clara_ingest.core.utils import parse_iso8601, utcnow
from clara_ingest.ingestion.models import ContentRecord, ContentStatus, RunMetrics, RunStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS content_tracking (
    url TEXT PRIMARY KEY,
    content_hash TEXT,
    content_length INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    status TEXT NOT NULL,
    s3_key TEXT,
    quality_score INTEGER,
    rejection_reason TEXT,
    error_message TEXT,
    chunk_count INTEGER NOT NULL DEFAULT 0,
    crawl_timestamp TEXT NOT NULL,
    ttl INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_content_tracking_status ON content_tracking(status);

CREATE TABLE IF NOT EXISTS run_metrics (
    execution_id TEXT PRIMARY KEY,
    start_time TEXT NOT NULL,
    end_time TEXT,
    status TEXT NOT NULL,
    total_urls INTEGER NOT NULL DEFAULT 0,
    processed_urls INTEGER NOT NULL DEFAULT 0,
    skipped_urls INTEGER NOT NULL DEFAULT 0,
    rejected_urls INTEGER NOT NULL DEFAULT 0,
    failed_urls INTEGER NOT NULL DEFAULT 0,
    new_content INTEGER NOT NULL DEFAULT 0,
    modified_content INTEGER NOT NULL DEFAULT 0,
    unchanged_content INTEGER NOT NULL DEFAULT 0,
    vectors_created INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    ttl INTEGER
);
"""

RECORD_COLUMNS = [
    "url",
    "content_hash",
    "content_length",
    "title",
    "status",
    "s3_key",
    "quality_score",
    "rejection_reason",
    "error_message",
    "chunk_count",
    "crawl_timestamp",
    "ttl",
]

METRICS_COLUMNS = [
    "execution_id",
    "start_time",
    "end_time",
    "status",
    "total_urls",
    "processed_urls",
    "skipped_urls",
    "rejected_urls",
    "failed_urls",
    "new_content",
    "modified_content",
    "unchanged_content",
    "vectors_created",
    "error_count",
    "ttl",
]


class SQLiteTrackingStore:
    """One row per URL holding the latest crawl outcome.

    ``put`` replaces the row for its URL, so ``get`` always returns the most
    recent record. Rows whose ``ttl`` has passed are invisible to ``get``
    and removed by ``purge_expired``.
    """

    def __init__(self, db_path: str = "data/tracking.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()
        logger.info(f"Tracking store initialized: {db_path}")

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            cursor = self.conn.execute(sql, params)
            rows = cursor.fetchall()
            self.conn.commit()
            return rows

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ContentRecord:
        data = dict(row)
        data["crawl_timestamp"] = parse_iso8601(data["crawl_timestamp"])
        return ContentRecord(**data)

    @staticmethod
    def _record_params(record: ContentRecord) -> tuple:
        data = record.model_dump(mode="json")
        return tuple(data[column] for column in RECORD_COLUMNS)

    async def get(self, url: str) -> Optional[ContentRecord]:
        now = int(utcnow().timestamp())
        rows = await asyncio.to_thread(
            self._execute,
            "SELECT * FROM content_tracking WHERE url = ? AND ttl > ?",
            (url, now),
        )
        return self._row_to_record(rows[0]) if rows else None

    async def put(self, record: ContentRecord) -> None:
        placeholders = ", ".join("?" for _ in RECORD_COLUMNS)
        sql = f"INSERT OR REPLACE INTO content_tracking ({', '.join(RECORD_COLUMNS)}) VALUES ({placeholders})"
        try:
            await asyncio.to_thread(self._execute, sql, self._record_params(record))
        except sqlite3.Error as e:
            raise TrackingWriteError(f"Failed to write tracking record for {record.url}: {e}") from e
        logger.debug(f"Updated content tracking for {record.url}: {record.status.value}")

    async def put_run_metrics(self, metrics: RunMetrics) -> None:
        data = metrics.model_dump(mode="json")
        placeholders = ", ".join("?" for _ in METRICS_COLUMNS)
        sql = f"INSERT OR REPLACE INTO run_metrics ({', '.join(METRICS_COLUMNS)}) VALUES ({placeholders})"
        try:
            await asyncio.to_thread(self._execute, sql, tuple(data[c] for c in METRICS_COLUMNS))
        except sqlite3.Error as e:
            raise TrackingWriteError(f"Failed to write run metrics {metrics.execution_id}: {e}") from e

    async def list_run_metrics(self, limit: int = 20) -> list[RunMetrics]:
        rows = await asyncio.to_thread(
            self._execute,
            "SELECT * FROM run_metrics ORDER BY start_time DESC LIMIT ?",
            (limit,),
        )
        results = []
        for row in rows:
            data = dict(row)
            data["start_time"] = parse_iso8601(data["start_time"])
            data["end_time"] = parse_iso8601(data["end_time"])
            data["status"] = RunStatus(data["status"])
            results.append(RunMetrics(**data))
        return results

    async def status_counts(self) -> dict[str, int]:
        """Number of live tracking records per status."""
        now = int(utcnow().timestamp())
        rows = await asyncio.to_thread(
            self._execute,
            "SELECT status, COUNT(*) AS n FROM content_tracking WHERE ttl > ? GROUP BY status",
            (now,),
        )
        counts = {status.value: 0 for status in ContentStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = int((now or utcnow()).timestamp())

        def _purge() -> int:
            with self._lock:
                removed = self.conn.execute("DELETE FROM content_tracking WHERE ttl <= ?", (cutoff,)).rowcount
                removed += self.conn.execute(
                    "DELETE FROM run_metrics WHERE ttl IS NOT NULL AND ttl <= ?", (cutoff,)
                ).rowcount
                self.conn.commit()
                return removed

        removed = await asyncio.to_thread(_purge)
        if removed:
            logger.info(f"Purged {removed} expired tracking rows")
        return removed

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._execute, "SELECT 1")
            return True
        except sqlite3.Error as e:
            logger.error(f"Tracking store health check failed: {e}")
            return False

    def close(self) -> None:
        with self._lock:
            self.conn.close()
