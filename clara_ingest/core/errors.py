"""Error taxonomy for the ingestion pipeline."""

from typing import Optional


class IngestionError(Exception):
    """Base class for pipeline errors."""


class TransientError(IngestionError):
    """Marker base for failures worth retrying with backoff."""


class FetchError(TransientError):
    """Network failure, timeout or non-2xx response while fetching a page."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code
        self.retryable = retryable


class ContentTooShort(IngestionError):
    """Normalized content is below the minimum length."""

    def __init__(self, url: str, length: int, minimum: int):
        super().__init__(f"Content too short for {url}: {length} < {minimum} characters")
        self.url = url
        self.length = length
        self.minimum = minimum


class QualityRejected(IngestionError):
    """Content scored below the quality threshold.

    Not a failure: the URL is recorded with ``quality_rejected`` status.
    """

    def __init__(self, url: str, score: int, threshold: int):
        super().__init__(f"Quality score {score} below threshold {threshold}")
        self.url = url
        self.score = score
        self.threshold = threshold


class EmbeddingError(TransientError):
    """Embedding API call failed."""


class StoreUnavailable(TransientError):
    """Object store or vector store could not be reached."""


class TrackingWriteError(IngestionError):
    """Tracking store write failed. Logged, never fails a URL."""


class DiscoveryError(IngestionError):
    """No URL list could be produced. Fatal for a run."""


def is_retryable(error: BaseException) -> bool:
    """Whether ``error`` should be retried by the backoff policy."""
    if isinstance(error, FetchError):
        return error.retryable
    return isinstance(error, TransientError)


class ConfigurationError(IngestionError):
    """Settings are missing or inconsistent for the requested component."""
