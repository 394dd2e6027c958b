"""Application configuration using Pydantic Settings."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clara_ingest.core.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHUNK_OVERLAP_WORDS,
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_CONTENT_LENGTH,
    DEFAULT_MIN_QUALITY_THRESHOLD,
    DEFAULT_RATE_LIMIT_DELAY,
    DEFAULT_RECORD_TTL_DAYS,
    DEFAULT_SEED_PATHS,
    DEFAULT_TITLE,
    DEFAULT_WINDOW_OVERLAP_RATIO,
    DOMAIN_KEYWORDS,
    IRRELEVANT_PATH_PATTERNS,
    ChunkingStrategy,
    ContentFormat,
)


class DiscoveryConfig(BaseModel):
    """Options for a single URL discovery pass."""

    max_urls: int = Field(500, ge=1)
    max_depth: int = Field(2, ge=0)
    relevance_threshold: float = Field(0.0, ge=0.0, le=1.0)
    allow_paths: list[str] = Field(default_factory=list)
    block_paths: list[str] = Field(default_factory=lambda: list(IRRELEVANT_PATH_PATTERNS))
    seed_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_SEED_PATHS))
    generated_paths: list[str] = Field(default_factory=list)
    verify_generated_paths: bool = True
    use_sitemaps: bool = True
    respect_robots_txt: bool = True
    max_sitemap_depth: int = Field(3, ge=0)
    max_links_per_level: int = Field(50, ge=1)
    crawl_batch_size: int = Field(10, ge=1)
    crawl_delay: float = Field(0.3, ge=0.0)


class NormalizerConfig(BaseModel):
    """Options for HTML normalization."""

    content_format: ContentFormat = ContentFormat.MARKDOWN
    min_content_length: int = Field(DEFAULT_MIN_CONTENT_LENGTH, ge=0)
    default_title: str = Field(DEFAULT_TITLE, min_length=1)
    min_paragraph_length: int = Field(10, ge=0)


class QualityConfig(BaseModel):
    """Weights and threshold for the quality heuristic."""

    min_quality_threshold: int = Field(DEFAULT_MIN_QUALITY_THRESHOLD, ge=0, le=100)
    keywords: list[str] = Field(default_factory=lambda: list(DOMAIN_KEYWORDS))
    # (minimum exclusive length, points), checked in order
    length_bands: list[tuple[int, int]] = Field(
        default_factory=lambda: [(2000, 30), (1000, 25), (500, 20), (200, 10)]
    )
    heading_points: int = 20
    many_headings_bonus: int = 10
    many_headings_count: int = 2
    # (minimum exclusive keyword count, points), checked in order
    keyword_bands: list[tuple[int, int]] = Field(
        default_factory=lambda: [(10, 30), (5, 25), (2, 15), (0, 10)]
    )
    no_keyword_points: int = -20
    short_content_length: int = 200
    short_content_penalty: int = 15
    no_keyword_penalty: int = 10


class ChunkingConfig(BaseModel):
    """Options for splitting normalized text into chunks."""

    strategy: ChunkingStrategy = ChunkingStrategy.SENTENCE
    max_chunk_size: int = Field(DEFAULT_MAX_CHUNK_SIZE, ge=50)
    overlap_words: int = Field(DEFAULT_CHUNK_OVERLAP_WORDS, ge=0)
    window_overlap_ratio: float = Field(DEFAULT_WINDOW_OVERLAP_RATIO, ge=0.0, lt=1.0)
    min_chunk_chars: int = Field(1, ge=1)

    @model_validator(mode="after")
    def _check_overlap(self) -> "ChunkingConfig":
        # An overlap seed longer than a whole chunk would never make progress
        if self.overlap_words * 2 >= self.max_chunk_size:
            raise ValueError("overlap_words is too large for max_chunk_size")
        return self


class RetryConfig(BaseModel):
    """Exponential backoff policy for transient failures."""

    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    base_delay: float = Field(1.0, ge=0.0)
    max_delay: float = Field(30.0, ge=0.0)
    multiplier: float = Field(2.0, ge=1.0)


class OrchestratorConfig(BaseModel):
    """Options for a batch run."""

    batch_size: int = Field(DEFAULT_BATCH_SIZE, ge=1)
    rate_limit_delay: float = Field(DEFAULT_RATE_LIMIT_DELAY, ge=0.0)
    vector_index: str = "clara_content_v1"
    vector_batch_size: int = Field(16, ge=1)
    embedding_model: Optional[str] = None
    object_prefix: str = "web_content/"
    record_ttl_days: int = Field(DEFAULT_RECORD_TTL_DAYS, ge=1)
    metrics_ttl_days: int = Field(30, ge=1)
    max_reported_errors: int = Field(10, ge=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "dev"

    # Admin API Security
    api_key: str = "dev-secret"
    ingest_rate_limit: str = "5/minute"

    # Target site
    target_domain: str = "diabetes.org"
    user_agent: str = "ClaraIngest/1.0"
    request_timeout: float = 10.0

    # OpenAI
    openai_api_key: str = ""
    openai_embed_model: str = "text-embedding-3-small"

    # Embeddings Provider
    embeddings_provider: Literal["openai", "local"] = "openai"
    local_embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Qdrant
    qdrant_url: str = "http://qdrant:6333"
    qdrant_api_key: str = ""
    collection_name: str = "clara_content_v1"

    # Storage
    storage_dir: str = "data/objects"
    tracking_db_path: str = "data/tracking.db"

    # Discovery
    max_urls: int = 500
    max_depth: int = 2
    relevance_threshold: float = 0.0
    discovery_delay: float = 0.3

    # Batch processing
    batch_size: int = DEFAULT_BATCH_SIZE
    rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Content processing
    content_format: ContentFormat = ContentFormat.MARKDOWN
    min_content_length: int = DEFAULT_MIN_CONTENT_LENGTH
    min_quality_threshold: int = DEFAULT_MIN_QUALITY_THRESHOLD
    chunking_strategy: ChunkingStrategy = ChunkingStrategy.SENTENCE
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    chunk_overlap_words: int = DEFAULT_CHUNK_OVERLAP_WORDS

    # Retention
    record_ttl_days: int = DEFAULT_RECORD_TTL_DAYS
    metrics_ttl_days: int = 30

    # Logging
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.env.lower() == "prod"

    @property
    def is_local_embeddings(self) -> bool:
        """Check if using local embeddings."""
        return self.embeddings_provider == "local"

    @property
    def embedding_model(self) -> str:
        return self.local_embed_model if self.is_local_embeddings else self.openai_embed_model

    def discovery_config(self, **overrides) -> DiscoveryConfig:
        values = {
            "max_urls": self.max_urls,
            "max_depth": self.max_depth,
            "relevance_threshold": self.relevance_threshold,
            "crawl_delay": self.discovery_delay,
        }
        values.update(overrides)
        return DiscoveryConfig(**values)

    def normalizer_config(self) -> NormalizerConfig:
        return NormalizerConfig(
            content_format=self.content_format,
            min_content_length=self.min_content_length,
        )

    def quality_config(self) -> QualityConfig:
        return QualityConfig(min_quality_threshold=self.min_quality_threshold)

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            strategy=self.chunking_strategy,
            max_chunk_size=self.max_chunk_size,
            overlap_words=self.chunk_overlap_words,
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def orchestrator_config(self, **overrides) -> OrchestratorConfig:
        """Build the validated orchestrator config from settings."""
        values = {
            "batch_size": self.batch_size,
            "rate_limit_delay": self.rate_limit_delay,
            "vector_index": self.collection_name,
            "embedding_model": self.embedding_model,
            "record_ttl_days": self.record_ttl_days,
            "metrics_ttl_days": self.metrics_ttl_days,
            "retry": self.retry_config(),
            "normalizer": self.normalizer_config(),
            "quality": self.quality_config(),
            "chunking": self.chunking_config(),
        }
        values.update(overrides)
        return OrchestratorConfig(**values)


# Global settings instance for the CLI and API entry points
settings = Settings()
