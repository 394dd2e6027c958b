"""FastAPI dependencies."""

import logging
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from clara_ingest.core.config import Settings, settings
from clara_ingest.ingestion.crawler import PageFetcher
from clara_ingest.ingestion.discovery import UrlDiscoverer
from clara_ingest.ingestion.orchestrator import BatchOrchestrator
from clara_ingest.ingestion.storage import FileObjectStore
from clara_ingest.ingestion.tracking import SQLiteTrackingStore
from clara_ingest.ingestion.triggers import MessageHandler, QueueIndexingHandoff
from clara_ingest.vector.embeddings import get_embedding_provider
from clara_ingest.vector.qdrant_client import QdrantVectorStore, get_client

logger = logging.getLogger(__name__)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


class Pipeline:
    """Collaborators wired once per process for the admin API."""

    def __init__(
        self,
        orchestrator: BatchOrchestrator,
        discoverer: UrlDiscoverer,
        handler: MessageHandler,
        fetcher: PageFetcher,
        config: Settings,
    ):
        self.orchestrator = orchestrator
        self.discoverer = discoverer
        self.handler = handler
        self.fetcher = fetcher
        self.config = config

    @property
    def tracking_store(self):
        return self.orchestrator.tracking_store

    @property
    def vector_store(self):
        return self.orchestrator.vector_store

    async def close(self) -> None:
        await self.fetcher.close()


def build_pipeline(config: Settings) -> Pipeline:
    """Construct the pipeline from settings."""
    fetcher = PageFetcher(user_agent=config.user_agent, timeout=config.request_timeout)
    embedder = get_embedding_provider(config)
    vector_store = QdrantVectorStore(get_client(config.qdrant_url, config.qdrant_api_key), embedder.vector_size)
    orchestrator = BatchOrchestrator(
        fetcher=fetcher,
        embedder=embedder,
        vector_store=vector_store,
        tracking_store=SQLiteTrackingStore(config.tracking_db_path),
        object_store=FileObjectStore(config.storage_dir),
        config=config.orchestrator_config(embedding_model=embedder.model_name),
    )
    handler = MessageHandler(orchestrator, QueueIndexingHandoff(retry=config.retry_config()))
    logger.info(f"Pipeline ready: collection={config.collection_name}, model={embedder.model_name}")
    return Pipeline(orchestrator, UrlDiscoverer(fetcher), handler, fetcher, config)


@lru_cache
def get_pipeline() -> Pipeline:
    return build_pipeline(settings)
