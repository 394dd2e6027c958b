"""Interfaces of the external collaborators the pipeline depends on."""

from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable

from clara_ingest.ingestion.models import (
    ContentRecord,
    Embedding,
    FetchedPage,
    RunMetrics,
    SearchHit,
    VectorRecord,
)


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, url: str) -> FetchedPage:
        """Fetch a page, raising FetchError on network/timeout/non-2xx."""
        ...


@runtime_checkable
class EmbeddingClient(Protocol):
    model_name: str
    vector_size: int

    async def embed(self, text: str, model: Optional[str] = None) -> Embedding:
        """Embed one text, raising EmbeddingError on failure."""
        ...


@runtime_checkable
class VectorStore(Protocol):
    async def put_vectors(self, index: str, records: list[VectorRecord]) -> int:
        """Upsert records keyed by ``VectorRecord.key``; return the count written."""
        ...

    async def delete_chunks_from(self, index: str, url: str, first_index: int) -> None:
        """Drop the chunks of ``url`` with ``chunk_index >= first_index``."""
        ...

    async def search(
        self,
        index: str,
        query_vector: list[float],
        k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchHit]:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class TrackingStore(Protocol):
    async def get(self, url: str) -> Optional[ContentRecord]:
        """Most recent unexpired record for ``url``, or None."""
        ...

    async def put(self, record: ContentRecord) -> None:
        ...

    async def put_run_metrics(self, metrics: RunMetrics) -> None:
        ...

    async def list_run_metrics(self, limit: int = 20) -> list[RunMetrics]:
        ...

    async def status_counts(self) -> dict[str, int]:
        ...

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        ...

    async def ping(self) -> bool:
        ...


@runtime_checkable
class ObjectStore(Protocol):
    async def put(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> str:
        """Store ``body`` under ``key`` and return its etag."""
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def list(self, prefix: str = "") -> list[str]:
        ...

    async def ping(self) -> bool:
        ...
