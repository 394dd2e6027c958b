"""Shared fixtures."""

import pytest

from clara_ingest.core.config import OrchestratorConfig, RetryConfig
from clara_ingest.ingestion.orchestrator import BatchOrchestrator
from clara_ingest.ingestion.storage import FileObjectStore
from clara_ingest.ingestion.tracking import SQLiteTrackingStore
from clara_ingest.tests.fakes import FakeEmbedder, InMemoryVectorStore


@pytest.fixture
def tracking_store(tmp_path):
    store = SQLiteTrackingStore(str(tmp_path / "tracking.db"))
    yield store
    store.close()


@pytest.fixture
def object_store(tmp_path):
    return FileObjectStore(str(tmp_path / "objects"))


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def fast_config():
    """Orchestrator config without delays."""
    return OrchestratorConfig(
        rate_limit_delay=0.0,
        retry=RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def make_orchestrator(tracking_store, object_store, vector_store, fast_config):
    """Factory wiring a BatchOrchestrator around the shared fakes."""

    def _make(fetcher, embedder=None, config=None, **kwargs) -> BatchOrchestrator:
        return BatchOrchestrator(
            fetcher=fetcher,
            embedder=embedder or FakeEmbedder(),
            vector_store=vector_store,
            tracking_store=tracking_store,
            object_store=object_store,
            config=config or fast_config,
            **kwargs,
        )

    return _make
