"""Exponential backoff for transient pipeline failures."""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from clara_ingest.core.config import RetryConfig
from clara_ingest.core.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryTracker:
    """Counts retries spent on one URL across all of its operations."""

    def __init__(self):
        self.retries = 0

    @property
    def attempts(self) -> int:
        return self.retries + 1


def build_retrying(config: RetryConfig, description: str = "", tracker: Optional[RetryTracker] = None) -> AsyncRetrying:
    """Tenacity policy: retry only errors for which ``is_retryable`` holds."""

    def _before_sleep(state: RetryCallState) -> None:
        if tracker is not None:
            tracker.retries += 1
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Retrying {description or 'operation'} in {state.next_action.sleep:.1f}s "
            f"(attempt {state.attempt_number}/{config.max_retries + 1}): {error}"
        )

    return AsyncRetrying(
        stop=stop_after_attempt(config.max_retries + 1),
        wait=wait_exponential(multiplier=config.base_delay, exp_base=config.multiplier, max=config.max_delay),
        retry=retry_if_exception(is_retryable),
        reraise=True,
        before_sleep=_before_sleep,
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "",
    tracker: Optional[RetryTracker] = None,
) -> T:
    """Await ``operation()`` under the backoff policy.

    The last error is re-raised once retries are exhausted; non-retryable
    errors are raised immediately.
    """
    async for attempt in build_retrying(config, description, tracker):
        with attempt:
            result = await operation()
    return result
