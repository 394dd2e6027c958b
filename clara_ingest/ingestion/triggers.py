"""Queue trigger surface: batch messages, sentinels and the indexing hand-off."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Literal, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field

from clara_ingest.core.config import RetryConfig
from clara_ingest.core.constants import DEFAULT_BATCH_SIZE, MESSAGE_PREPARE_INGESTION, MESSAGE_TRIGGER_INGESTION
from clara_ingest.core.errors import StoreUnavailable
from clara_ingest.core.utils import utcnow
from clara_ingest.ingestion.models import RunSummary
from clara_ingest.ingestion.orchestrator import BatchOrchestrator
from clara_ingest.ingestion.retry import call_with_retry

logger = logging.getLogger(__name__)


class BatchMessage(BaseModel):
    """A batch of URLs to process."""

    model_config = ConfigDict(populate_by_name=True)

    batch_id: str = Field(alias="batchId")
    urls: list[str] = Field(min_length=1)
    discovery_id: Optional[str] = Field(None, alias="discoveryId")
    timestamp: Optional[datetime] = None


class SentinelMessage(BaseModel):
    """Control message marking a stage transition.

    ``PREPARE_INGESTION`` says every batch has been queued;
    ``TRIGGER_INGESTION`` asks for the downstream index to be rebuilt.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["PREPARE_INGESTION", "TRIGGER_INGESTION"]
    discovery_id: str = Field(alias="discoveryId")
    metadata: dict[str, Any] = Field(default_factory=dict)


QueueMessage = Union[BatchMessage, SentinelMessage]


class IndexingRequest(BaseModel):
    """Request handed to the external indexing job."""

    idempotency_key: str
    discovery_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    requested_at: datetime
    delivery_count: int = 0


class MessageOutcome(BaseModel):
    """What handling one queue message did."""

    kind: Literal["batch", "prepare", "trigger"]
    batch_id: Optional[str] = None
    discovery_id: Optional[str] = None
    summary: Optional[RunSummary] = None
    indexing_request: Optional[IndexingRequest] = None


def parse_message(body: Union[str, bytes, dict]) -> QueueMessage:
    """Decode a queue message body.

    Raises:
        ValueError: for malformed JSON or an unknown message shape.
    """
    data = body if isinstance(body, dict) else orjson.loads(body)
    if not isinstance(data, dict):
        raise ValueError("Queue message must be a JSON object")
    if "type" in data:
        return SentinelMessage.model_validate(data)
    return BatchMessage.model_validate(data)


def encode_message(message: QueueMessage) -> bytes:
    return orjson.dumps(message.model_dump(mode="json", by_alias=True, exclude_none=True))


def plan_batches(
    urls: list[str],
    discovery_id: str,
    batch_size: int = DEFAULT_BATCH_SIZE,
    metadata: Optional[dict[str, Any]] = None,
) -> list[QueueMessage]:
    """Split a discovered URL list into batch messages followed by the two sentinels."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    now = utcnow()
    messages: list[QueueMessage] = []
    for number, start in enumerate(range(0, len(urls), batch_size), 1):
        messages.append(
            BatchMessage(
                batch_id=f"{discovery_id}-batch-{number:04d}",
                urls=urls[start : start + batch_size],
                discovery_id=discovery_id,
                timestamp=now,
            )
        )

    sentinel_metadata = {"total_urls": len(urls), "total_batches": len(messages), **(metadata or {})}
    messages.append(
        SentinelMessage(type=MESSAGE_PREPARE_INGESTION, discovery_id=discovery_id, metadata=sentinel_metadata)
    )
    messages.append(
        SentinelMessage(type=MESSAGE_TRIGGER_INGESTION, discovery_id=discovery_id, metadata=sentinel_metadata)
    )
    return messages


class QueueIndexingHandoff:
    """In-process queue between the pipeline and the indexing job, delivered at least once.

    A received request stays in flight until acked. Requests whose ack
    deadline passes are put back on the queue by ``redeliver_expired``, so a
    consumer may see the same ``idempotency_key`` more than once and must
    treat it as a no-op after the first completion.
    """

    def __init__(
        self,
        maxsize: int = 0,
        ack_timeout: float = 300.0,
        publish_timeout: float = 5.0,
        retry: Optional[RetryConfig] = None,
    ):
        self.queue: asyncio.Queue[IndexingRequest] = asyncio.Queue(maxsize=maxsize)
        self.ack_timeout = ack_timeout
        self.publish_timeout = publish_timeout
        self.retry = retry or RetryConfig()
        self._pending: set[str] = set()
        self._in_flight: dict[str, tuple[IndexingRequest, float]] = {}
        self._completed: set[str] = set()

    async def _put(self, request: IndexingRequest) -> None:
        try:
            await asyncio.wait_for(self.queue.put(request), timeout=self.publish_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"Indexing queue full, could not publish {request.idempotency_key}") from e

    async def publish(self, request: IndexingRequest) -> bool:
        """Queue ``request``; returns False if the key is already queued, in flight or done."""
        key = request.idempotency_key
        if key in self._pending or key in self._in_flight or key in self._completed:
            logger.info(f"Indexing request {key} already handed off")
            return False
        await call_with_retry(lambda: self._put(request), self.retry, f"publish {key}")
        self._pending.add(key)
        logger.info(f"Indexing request {key} published")
        return True

    async def receive(self, timeout: Optional[float] = None) -> IndexingRequest:
        if timeout is None:
            request = await self.queue.get()
        else:
            request = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        key = request.idempotency_key
        self._pending.discard(key)
        request = request.model_copy(update={"delivery_count": request.delivery_count + 1})
        self._in_flight[key] = (request, time.monotonic() + self.ack_timeout)
        return request

    def ack(self, idempotency_key: str) -> None:
        self._in_flight.pop(idempotency_key, None)
        self._completed.add(idempotency_key)
        logger.info(f"Indexing request {idempotency_key} acknowledged")

    def is_completed(self, idempotency_key: str) -> bool:
        return idempotency_key in self._completed

    async def redeliver_expired(self, now: Optional[float] = None) -> int:
        """Requeue in-flight requests whose ack deadline has passed."""
        now = time.monotonic() if now is None else now
        expired = [key for key, (_, deadline) in self._in_flight.items() if deadline <= now]
        for key in expired:
            request, deadline = self._in_flight.pop(key)
            logger.warning(f"Redelivering unacknowledged indexing request {key}")
            try:
                await self._put(request)
            except StoreUnavailable:
                self._in_flight[key] = (request, deadline)
                raise
            self._pending.add(key)
        return len(expired)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)


class MessageHandler:
    """Dispatches queue messages to the orchestrator or the indexing hand-off."""

    def __init__(self, orchestrator: BatchOrchestrator, handoff: Optional[QueueIndexingHandoff] = None):
        self.orchestrator = orchestrator
        self.handoff = handoff or QueueIndexingHandoff()

    async def handle(self, body: Union[str, bytes, dict]) -> MessageOutcome:
        message = parse_message(body)

        if isinstance(message, BatchMessage):
            logger.info(f"Processing batch {message.batch_id} with {len(message.urls)} URLs")
            summary = await self.orchestrator.run(message.urls, execution_id=message.batch_id)
            logger.info(
                f"Batch {message.batch_id} completed: "
                f"{summary.success_count}/{summary.metrics.total_urls} processed"
            )
            return MessageOutcome(
                kind="batch",
                batch_id=message.batch_id,
                discovery_id=message.discovery_id,
                summary=summary,
            )

        if message.type == MESSAGE_PREPARE_INGESTION:
            logger.info(f"All content batches queued for discovery {message.discovery_id}")
            return MessageOutcome(kind="prepare", discovery_id=message.discovery_id)

        request = IndexingRequest(
            idempotency_key=f"index-{message.discovery_id}",
            discovery_id=message.discovery_id,
            metadata=message.metadata,
            requested_at=utcnow(),
        )
        await self.handoff.publish(request)
        return MessageOutcome(kind="trigger", discovery_id=message.discovery_id, indexing_request=request)
