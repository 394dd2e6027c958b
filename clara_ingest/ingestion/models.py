"""Data models for ingestion pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class DiscoveryMethod(str, Enum):
    """How a URL was discovered."""

    SITEMAP = "sitemap"
    LINK_FOLLOWING = "link-following"
    PATH_GENERATION = "path-generation"


class ContentStatus(str, Enum):
    """Status stored on a content tracking record."""

    SUCCESS = "success"
    QUALITY_REJECTED = "quality_rejected"
    FAILED = "failed"


class ChangeType(str, Enum):
    """Result of comparing a page against its tracking record."""

    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class UrlState(str, Enum):
    """Per-URL processing state."""

    DISCOVERED = "discovered"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    CHANGE_CHECK = "change_check"
    QUALITY_CHECK = "quality_check"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    DONE = "done"
    SKIPPED = "skipped"
    QUALITY_REJECTED = "quality_rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({UrlState.DONE, UrlState.SKIPPED, UrlState.QUALITY_REJECTED, UrlState.FAILED})


class RunStatus(str, Enum):
    """Status of an orchestrated run."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"


class DiscoveredURL(BaseModel):
    """URL produced by a discovery pass."""

    url: str
    discovery_method: DiscoveryMethod
    depth: int = 0
    estimated_relevance: float = Field(0.0, ge=0.0, le=1.0)


class DiscoveryResult(BaseModel):
    """Output of a discovery pass."""

    urls: list[DiscoveredURL]
    total_discovered: int
    breakdown: dict[str, int] = Field(default_factory=dict)
    processing_time: float = 0.0


class FetchedPage(BaseModel):
    """Raw page returned by the fetcher."""

    url: str
    final_url: str
    status_code: int = 200
    html: str
    fetched_at: datetime
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class NormalizedContent(BaseModel):
    """Clean text extracted from a page."""

    url: str
    title: str
    text: str
    extracted_at: datetime
    headings: list[str] = Field(default_factory=list)


class ContentRecord(BaseModel):
    """Tracking record for the last crawl of a URL."""

    url: str
    content_hash: Optional[str] = None
    content_length: int = 0
    title: Optional[str] = None
    status: ContentStatus
    s3_key: Optional[str] = None
    quality_score: Optional[int] = None
    rejection_reason: Optional[str] = None
    error_message: Optional[str] = None
    chunk_count: int = 0
    crawl_timestamp: datetime
    ttl: int


class ChunkMetadata(BaseModel):
    """Positional metadata attached to a chunk."""

    source_url: str
    source_title: str
    chunk_index: int
    total_chunks: int = 0
    last_updated: datetime
    char_start: Optional[int] = None
    char_end: Optional[int] = None


class Chunk(BaseModel):
    """Model for text chunk."""

    id: str
    content: str
    metadata: ChunkMetadata


class VectorRecord(BaseModel):
    """Vector keyed by chunk id, as written to the vector store."""

    key: str
    vector: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class SearchHit(BaseModel):
    """Nearest-neighbour search result."""

    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class Embedding(BaseModel):
    """Vector returned by an embedding client."""

    vector: list[float]
    dimensions: int


class UrlResult(BaseModel):
    """Outcome of processing one URL."""

    url: str
    state: UrlState
    change_type: Optional[ChangeType] = None
    content_hash: Optional[str] = None
    quality_score: Optional[int] = None
    chunks_created: int = 0
    vectors_created: int = 0
    attempts: int = 1
    s3_key: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class RunMetrics(BaseModel):
    """Execution metrics for one orchestrated run."""

    execution_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    total_urls: int = 0
    processed_urls: int = 0
    skipped_urls: int = 0
    rejected_urls: int = 0
    failed_urls: int = 0
    new_content: int = 0
    modified_content: int = 0
    unchanged_content: int = 0
    vectors_created: int = 0
    error_count: int = 0
    ttl: Optional[int] = None


class RunSummary(BaseModel):
    """Run metrics plus per-URL results and the first reported errors."""

    metrics: RunMetrics
    results: list[UrlResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return self.metrics.processed_urls

    @property
    def failure_count(self) -> int:
        return self.metrics.failed_urls
