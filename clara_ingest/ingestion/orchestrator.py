"""Batch orchestration of the ingestion pipeline."""

import asyncio
import logging
from datetime import datetime
from functools import partial
from typing import Callable, Optional
from uuid import uuid4

from clara_ingest.core.config import OrchestratorConfig
from clara_ingest.core.constants import ContentFormat
from clara_ingest.core.errors import EmbeddingError, QualityRejected, TrackingWriteError
from clara_ingest.core.interfaces import EmbeddingClient, Fetcher, ObjectStore, TrackingStore, VectorStore
from clara_ingest.core.logging import short_hash
from clara_ingest.core.utils import format_iso8601, normalize_url, ttl_from, url_to_key, utcnow
from clara_ingest.ingestion.change_detection import ChangeDetection, ChangeDetector, ContentHasher
from clara_ingest.ingestion.chunker import Chunker
from clara_ingest.ingestion.models import (
    ChangeType,
    Chunk,
    ContentRecord,
    ContentStatus,
    NormalizedContent,
    RunMetrics,
    RunStatus,
    RunSummary,
    UrlResult,
    UrlState,
    VectorRecord,
)
from clara_ingest.ingestion.parse_html import normalize
from clara_ingest.ingestion.quality import QualityAssessment, QualityScorer
from clara_ingest.ingestion.retry import RetryTracker, call_with_retry

logger = logging.getLogger(__name__)

Normalizer = Callable[[str, str], NormalizedContent]
ProgressCallback = Callable[[UrlResult], None]


class _UrlRun:
    """Mutable progress of one URL through the state machine."""

    def __init__(self, url: str):
        self.url = url
        self.state = UrlState.DISCOVERED
        self.tracker = RetryTracker()
        self.detection: Optional[ChangeDetection] = None
        self.quality_score: Optional[int] = None
        self.chunks_created = 0
        self.vectors_created = 0

    def advance(self, state: UrlState) -> None:
        logger.debug(f"{self.url}: {self.state.value} -> {state.value}")
        self.state = state

    def result(self, state: UrlState, **fields) -> UrlResult:
        if not state.is_terminal:
            raise ValueError(f"{state.value} is not a terminal state")
        self.state = state
        detection = self.detection
        values = {
            "url": self.url,
            "state": state,
            "change_type": detection.change_type if detection else None,
            "content_hash": detection.digest if detection else None,
            "quality_score": self.quality_score,
            "chunks_created": self.chunks_created,
            "vectors_created": self.vectors_created,
            "attempts": self.tracker.attempts,
        }
        values.update(fields)
        return UrlResult(**values)


class BatchOrchestrator:
    """Drives fetch, normalize, change check, quality, chunk, embed and store over a URL list.

    Collaborators are injected; nothing here is process-global. URLs are
    processed in fixed-size concurrent batches with a delay between batches.
    Every per-URL error is converted into a ``UrlResult``; ``run`` never
    raises for partial failure.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        tracking_store: TrackingStore,
        object_store: ObjectStore,
        config: Optional[OrchestratorConfig] = None,
        normalizer: Optional[Normalizer] = None,
        chunker: Optional[Chunker] = None,
        scorer: Optional[QualityScorer] = None,
        hasher: Optional[ContentHasher] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.fetcher = fetcher
        self.embedder = embedder
        self.vector_store = vector_store
        self.tracking_store = tracking_store
        self.object_store = object_store
        self.normalizer = normalizer or partial(normalize, config=self.config.normalizer)
        self.chunker = chunker or Chunker(self.config.chunking)
        self.scorer = scorer or QualityScorer(self.config.quality)
        self.detector = ChangeDetector(tracking_store, hasher)
        self.progress_callback = progress_callback

    @property
    def embedding_model(self) -> str:
        return self.config.embedding_model or self.embedder.model_name

    async def run(
        self,
        urls: list[str],
        cancel_event: Optional[asyncio.Event] = None,
        execution_id: Optional[str] = None,
    ) -> RunSummary:
        """Process ``urls`` and return the run summary.

        Setting ``cancel_event`` stops new batches from starting; items
        already in flight finish their writes.
        """
        execution_id = execution_id or f"run-{uuid4().hex[:12]}"
        start_time = utcnow()
        targets = self.dedupe(urls)
        batch_size = self.config.batch_size
        batches = [targets[i : i + batch_size] for i in range(0, len(targets), batch_size)]
        logger.info(f"Run {execution_id}: {len(targets)} URLs in {len(batches)} batches of {batch_size}")

        results: list[UrlResult] = []
        cancelled = False
        for number, batch in enumerate(batches, 1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.warning(f"Run {execution_id} cancelled before batch {number}/{len(batches)}")
                break

            logger.info(f"Processing batch {number}/{len(batches)} ({len(batch)} URLs)")
            batch_results = await asyncio.gather(*(self.process_url(url) for url in batch))
            results.extend(batch_results)
            if self.progress_callback is not None:
                for result in batch_results:
                    self.progress_callback(result)

            if number < len(batches) and self.config.rate_limit_delay > 0:
                await self._pause(cancel_event)

        metrics = self._aggregate(execution_id, start_time, len(targets), results, cancelled)
        try:
            await self.tracking_store.put_run_metrics(metrics)
        except Exception as e:
            logger.error(f"Failed to store run metrics for {execution_id}: {e}")

        errors = [f"{r.url}: {r.error}" for r in results if r.state == UrlState.FAILED]
        logger.info(
            f"Run {execution_id} {metrics.status.value}: {metrics.processed_urls} processed, "
            f"{metrics.skipped_urls} skipped, {metrics.rejected_urls} rejected, "
            f"{metrics.failed_urls} failed, {metrics.vectors_created} vectors"
        )
        return RunSummary(metrics=metrics, results=results, errors=errors[: self.config.max_reported_errors])

    @staticmethod
    def dedupe(urls: list[str]) -> list[str]:
        """Normalized URLs in first-seen order, without duplicates."""
        seen: set[str] = set()
        targets: list[str] = []
        for url in urls:
            key = normalize_url(url) or url.strip()
            if key and key not in seen:
                seen.add(key)
                targets.append(key)
        return targets

    async def _pause(self, cancel_event: Optional[asyncio.Event]) -> None:
        """Inter-batch delay, cut short by cancellation."""
        if cancel_event is None:
            await asyncio.sleep(self.config.rate_limit_delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.config.rate_limit_delay)
        except asyncio.TimeoutError:
            pass

    def _aggregate(
        self,
        execution_id: str,
        start_time: datetime,
        total: int,
        results: list[UrlResult],
        cancelled: bool,
    ) -> RunMetrics:
        def count(state: UrlState) -> int:
            return sum(1 for r in results if r.state == state)

        def changes(change_type: ChangeType) -> int:
            return sum(1 for r in results if r.change_type == change_type)

        failed = count(UrlState.FAILED)
        if cancelled:
            status = RunStatus.CANCELLED
        elif failed:
            status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            status = RunStatus.COMPLETED

        end_time = utcnow()
        return RunMetrics(
            execution_id=execution_id,
            start_time=start_time,
            end_time=end_time,
            status=status,
            total_urls=total,
            processed_urls=count(UrlState.DONE),
            skipped_urls=count(UrlState.SKIPPED),
            rejected_urls=count(UrlState.QUALITY_REJECTED),
            failed_urls=failed,
            new_content=changes(ChangeType.NEW),
            modified_content=changes(ChangeType.MODIFIED),
            unchanged_content=changes(ChangeType.UNCHANGED),
            vectors_created=sum(r.vectors_created for r in results),
            error_count=failed,
            ttl=ttl_from(end_time, self.config.metrics_ttl_days),
        )

    async def process_url(self, url: str) -> UrlResult:
        """Run one URL to a terminal state. Never raises."""
        run = _UrlRun(url)
        if not normalize_url(url):
            return run.result(UrlState.FAILED, error=f"Invalid URL: {url}", error_type="ValueError")
        try:
            return await self._pipeline(run)
        except Exception as e:
            failed_in = run.state
            logger.error(f"Failed to process {url} during {failed_in.value}: {e}")
            await self._record_failure(run, e)
            return run.result(UrlState.FAILED, error=str(e), error_type=type(e).__name__)

    async def _pipeline(self, run: _UrlRun) -> UrlResult:
        url = run.url
        retry = self.config.retry

        run.advance(UrlState.FETCHING)
        page = await call_with_retry(partial(self.fetcher.fetch, url), retry, f"fetch {url}", run.tracker)

        run.advance(UrlState.NORMALIZING)
        content = self.normalizer(page.html, url)

        run.advance(UrlState.CHANGE_CHECK)
        digest = self.detector.hash(content.text)
        run.detection = await self.detector.has_changed(url, digest)
        if not run.detection.changed:
            await self._refresh_unchanged(run)
            logger.info(f"Skipped unchanged {url} ({short_hash(digest)})")
            return run.result(UrlState.SKIPPED)

        run.advance(UrlState.QUALITY_CHECK)
        heading_count = len(content.headings) if self.config.normalizer.content_format == ContentFormat.PLAIN else None
        assessment = self.scorer.assess(content.text, heading_count)
        run.quality_score = assessment.score
        if not assessment.accepted:
            rejection = QualityRejected(url, assessment.score, self.scorer.config.min_quality_threshold)
            await self._record_rejection(run, content, assessment)
            logger.info(f"Rejected {url}: {rejection}")
            return run.result(UrlState.QUALITY_REJECTED, error=str(rejection), error_type=type(rejection).__name__)

        run.advance(UrlState.CHUNKING)
        chunks = self.chunker.chunk(content.text, url, content.title, last_updated=content.extracted_at)
        run.chunks_created = len(chunks)

        run.advance(UrlState.EMBEDDING)
        await self._embed_and_write(run, chunks, digest)

        run.advance(UrlState.STORING)
        s3_key = f"{self.config.object_prefix}{url_to_key(url)}.md"
        metadata = {
            "url": url,
            "title": content.title,
            "content_hash": digest,
            "quality_score": str(assessment.score),
            "extracted_at": format_iso8601(content.extracted_at),
        }
        await call_with_retry(
            partial(self.object_store.put, s3_key, content.text.encode("utf-8"), metadata),
            retry,
            f"store {url}",
            run.tracker,
        )

        now = utcnow()
        await self._write_record(
            ContentRecord(
                url=url,
                content_hash=digest,
                content_length=len(content.text),
                title=content.title,
                status=ContentStatus.SUCCESS,
                s3_key=s3_key,
                quality_score=assessment.score,
                chunk_count=len(chunks),
                crawl_timestamp=now,
                ttl=ttl_from(now, self.config.record_ttl_days),
            )
        )
        logger.info(
            f"Processed {url}: {run.detection.change_type.value}, {len(chunks)} chunks, "
            f"{run.vectors_created} vectors, quality {assessment.score}"
        )
        return run.result(UrlState.DONE, s3_key=s3_key)

    async def _embed_and_write(self, run: _UrlRun, chunks: list[Chunk], digest: str) -> None:
        """Embed every chunk and upsert vectors in groups.

        On an embedding failure the vectors embedded so far are still
        written; they are keyed by deterministic chunk ids, so the retry of
        the URL overwrites them. Once a modified page is fully written,
        chunks left over from a longer previous version are deleted.
        """
        pending: list[VectorRecord] = []
        for chunk in chunks:
            try:
                embedding = await call_with_retry(
                    partial(self.embedder.embed, chunk.content, self.embedding_model),
                    self.config.retry,
                    f"embed chunk {chunk.metadata.chunk_index} of {run.url}",
                    run.tracker,
                )
            except EmbeddingError:
                if pending:
                    await self._flush_partial(run, pending)
                raise
            pending.append(self._vector_record(chunk, embedding.vector, digest))
            if len(pending) >= self.config.vector_batch_size:
                await self._write_vectors(run, pending)
                pending = []

        if pending:
            await self._write_vectors(run, pending)

        if run.detection.change_type == ChangeType.MODIFIED:
            # The previous version may have had more chunks
            await call_with_retry(
                partial(self.vector_store.delete_chunks_from, self.config.vector_index, run.url, len(chunks)),
                self.config.retry,
                f"stale chunk delete for {run.url}",
                run.tracker,
            )

    async def _write_vectors(self, run: _UrlRun, records: list[VectorRecord]) -> None:
        written = await call_with_retry(
            partial(self.vector_store.put_vectors, self.config.vector_index, records),
            self.config.retry,
            f"vector write for {run.url}",
            run.tracker,
        )
        run.vectors_created += written

    async def _flush_partial(self, run: _UrlRun, records: list[VectorRecord]) -> None:
        try:
            await self._write_vectors(run, records)
            logger.warning(f"Kept {len(records)} vectors embedded before failure for {run.url}")
        except Exception as e:
            logger.error(f"Could not write partial vectors for {run.url}: {e}")

    def _vector_record(self, chunk: Chunk, vector: list[float], digest: str) -> VectorRecord:
        meta = chunk.metadata
        return VectorRecord(
            key=chunk.id,
            vector=vector,
            metadata={
                "text": chunk.content,
                "url": meta.source_url,
                "title": meta.source_title,
                "chunk_index": meta.chunk_index,
                "total_chunks": meta.total_chunks,
                "last_updated": format_iso8601(meta.last_updated),
                "content_hash": digest,
                "embedding_model": self.embedding_model,
            },
        )

    async def _write_record(self, record: ContentRecord) -> None:
        """Best-effort tracking write; a failure never changes the URL outcome."""
        try:
            await self.tracking_store.put(record)
        except TrackingWriteError as e:
            logger.error(str(e))
        except Exception as e:
            logger.error(f"Tracking write failed for {record.url}: {e}")

    async def _refresh_unchanged(self, run: _UrlRun) -> None:
        """Re-stamp the previous record so it does not expire.

        A ``failed`` record whose hash matches is restored to the outcome
        that produced the hash, since that content is already indexed.
        """
        previous = run.detection.previous_record
        if previous is None:
            return
        status = previous.status
        if status == ContentStatus.FAILED:
            status = ContentStatus.QUALITY_REJECTED if previous.rejection_reason else ContentStatus.SUCCESS
        now = utcnow()
        run.quality_score = previous.quality_score
        await self._write_record(
            previous.model_copy(
                update={
                    "status": status,
                    "error_message": None,
                    "crawl_timestamp": now,
                    "ttl": ttl_from(now, self.config.record_ttl_days),
                }
            )
        )

    async def _record_rejection(self, run: _UrlRun, content: NormalizedContent, assessment: QualityAssessment) -> None:
        now = utcnow()
        await self._write_record(
            ContentRecord(
                url=run.url,
                content_hash=run.detection.digest,
                content_length=len(content.text),
                title=content.title,
                status=ContentStatus.QUALITY_REJECTED,
                quality_score=assessment.score,
                rejection_reason=assessment.reason,
                crawl_timestamp=now,
                ttl=ttl_from(now, self.config.record_ttl_days),
            )
        )

    async def _record_failure(self, run: _UrlRun, error: Exception) -> None:
        """Write a ``failed`` record that keeps the previous record's hash.

        The new digest is never stored on failure, so the next run still
        sees the content as changed and retries it.
        """
        if run.detection is not None:
            previous = run.detection.previous_record
        else:
            try:
                previous = await self.tracking_store.get(run.url)
            except Exception as e:
                logger.warning(f"Could not read previous record for {run.url}: {e}")
                previous = None

        now = utcnow()
        update = {
            "status": ContentStatus.FAILED,
            "error_message": str(error),
            "crawl_timestamp": now,
            "ttl": ttl_from(now, self.config.record_ttl_days),
        }
        if previous is not None:
            record = previous.model_copy(update=update)
        else:
            record = ContentRecord(url=run.url, **update)
        await self._write_record(record)

    async def health_check(self) -> dict[str, bool]:
        """Ping every backing store."""
        checks = {
            "object_store": self.object_store.ping(),
            "tracking_store": self.tracking_store.ping(),
            "vector_store": self.vector_store.ping(),
        }
        results = await asyncio.gather(*checks.values(), return_exceptions=True)
        status = {name: result is True for name, result in zip(checks, results)}
        status["healthy"] = all(status.values())
        return status
