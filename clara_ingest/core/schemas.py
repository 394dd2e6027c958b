"""Pydantic schemas for API requests and responses."""

from typing import Optional

from pydantic import BaseModel, Field

from clara_ingest.ingestion.models import RunMetrics, RunSummary


class IngestRequest(BaseModel):
    """Ingestion trigger schema."""

    urls: list[str] = Field(default_factory=list, description="URLs to process", max_length=5000)
    discover: bool = Field(False, description="Run URL discovery on the target domain first")
    max_urls: Optional[int] = Field(None, ge=1, description="Cap for the discovery pass")
    wait: bool = Field(False, description="Process inline and return the run summary")


class IngestAccepted(BaseModel):
    """Response for a queued ingestion run."""

    status: str = "accepted"
    execution_id: str
    total_urls: Optional[int] = None
    summary: Optional[RunSummary] = None


class RunList(BaseModel):
    runs: list[RunMetrics]


class AdminStats(BaseModel):
    """Tracking and vector index statistics."""

    collection_name: str
    total_chunks: int
    embedding_model: str
    vector_size: int
    content_status: dict[str, int]


class HealthStatus(BaseModel):
    status: str
    version: str
    checks: dict[str, bool] = Field(default_factory=dict)
