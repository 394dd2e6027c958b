"""Tests for the batch orchestrator."""

import asyncio

import pytest

from clara_ingest.core.config import OrchestratorConfig, QualityConfig, RetryConfig
from clara_ingest.core.errors import FetchError, StoreUnavailable, TrackingWriteError
from clara_ingest.core.utils import url_to_key
from clara_ingest.ingestion.models import ChangeType, ContentStatus, FetchedPage, RunStatus, UrlState
from clara_ingest.ingestion.orchestrator import BatchOrchestrator
from clara_ingest.ingestion.storage import FileObjectStore
from clara_ingest.ingestion.tracking import SQLiteTrackingStore
from clara_ingest.tests.fakes import DIABETES_PARAGRAPHS, FakeEmbedder, FakeFetcher, InMemoryVectorStore, build_page

INDEX = "clara_content_v1"


def _urls(n: int) -> list[str]:
    return [f"https://diabetes.org/page-{i}" for i in range(1, n + 1)]


def _site(urls: list[str]) -> dict[str, str]:
    return {url: build_page(title=f"Diabetes page {i}") for i, url in enumerate(urls, 1)}


class FlakyFetcher(FakeFetcher):
    """Fails the first ``failures_before_success`` fetches of every URL."""

    def __init__(self, pages, failures_before_success: int = 1):
        super().__init__(pages)
        self.remaining = {url: failures_before_success for url in pages}

    async def fetch(self, url: str) -> FetchedPage:
        if self.remaining.get(url, 0) > 0:
            self.remaining[url] -= 1
            self.calls.append(url)
            raise FetchError(url, "Timeout: read timed out")
        return await super().fetch(url)


class FailingPutTrackingStore(SQLiteTrackingStore):
    async def put(self, record):
        raise TrackingWriteError(f"Failed to write tracking record for {record.url}: disk full")


@pytest.mark.asyncio
async def test_scenario_page_is_processed(make_orchestrator, tracking_store, vector_store, object_store):
    """Test a 1,500 character diabetes page with two headings is indexed."""
    url = "https://diabetes.org/about-diabetes"
    orchestrator = make_orchestrator(FakeFetcher({url: build_page()}))

    summary = await orchestrator.run([url])

    result = summary.results[0]
    assert len(" ".join(DIABETES_PARAGRAPHS)) >= 1400
    assert result.state == UrlState.DONE
    assert result.change_type == ChangeType.NEW
    assert result.quality_score >= 50
    assert result.chunks_created >= 2
    assert result.vectors_created == result.chunks_created

    record = await tracking_store.get(url)
    assert record.status == ContentStatus.SUCCESS
    assert record.content_hash == result.content_hash
    assert record.chunk_count == result.chunks_created
    assert (await tracking_store.status_counts())["success"] == 1

    records = vector_store.records(INDEX)
    assert len(records) == result.chunks_created
    assert all(r.metadata["url"] == url and r.metadata["text"] for r in records.values())

    key = f"web_content/{url_to_key(url)}.md"
    assert key.startswith("web_content/diabetes-org-about-diabetes-")
    assert result.s3_key == record.s3_key == key
    assert await object_store.list("web_content/") == [key]
    stored = await object_store.get(key)
    assert b"Diabetes is a chronic condition" in stored


@pytest.mark.asyncio
async def test_rerun_identical_content_is_skipped(make_orchestrator, tracking_store, vector_store):
    """Test a byte-identical re-run embeds nothing and writes no vectors."""
    url = "https://diabetes.org/about-diabetes"
    embedder = FakeEmbedder()
    orchestrator = make_orchestrator(FakeFetcher({url: build_page()}), embedder)

    first = await orchestrator.run([url])
    first_record = await tracking_store.get(url)
    embed_calls, write_calls = embedder.calls, vector_store.write_calls

    second = await orchestrator.run([url])

    result = second.results[0]
    assert first.results[0].state == UrlState.DONE
    assert result.state == UrlState.SKIPPED
    assert result.change_type == ChangeType.UNCHANGED
    assert result.chunks_created == 0
    assert embedder.calls == embed_calls
    assert vector_store.write_calls == write_calls
    assert second.metrics.skipped_urls == 1
    assert second.metrics.unchanged_content == 1

    record = await tracking_store.get(url)
    assert record.status == ContentStatus.SUCCESS
    assert record.content_hash == first_record.content_hash
    assert record.crawl_timestamp >= first_record.crawl_timestamp


@pytest.mark.asyncio
async def test_one_failing_url_does_not_abort_batch(make_orchestrator, tracking_store, vector_store):
    """Test a batch of five where the third fetch always fails."""
    urls = _urls(5)
    failing = urls[2]
    fetcher = FakeFetcher(_site(urls), failures={failing: FetchError(failing, "Network error: connection reset")})
    orchestrator = make_orchestrator(fetcher)

    summary = await orchestrator.run(urls)

    assert summary.success_count == 4
    assert summary.failure_count == 1
    assert summary.metrics.status == RunStatus.COMPLETED_WITH_ERRORS
    assert len(summary.errors) == 1 and failing in summary.errors[0]

    failed = next(r for r in summary.results if r.url == failing)
    assert failed.state == UrlState.FAILED
    assert failed.error_type == "FetchError"
    # max_retries=2 means three attempts in total
    assert fetcher.calls.count(failing) == 3
    assert failed.attempts == 3

    indexed_urls = {r.metadata["url"] for r in vector_store.records(INDEX).values()}
    assert indexed_urls == set(urls) - {failing}

    record = await tracking_store.get(failing)
    assert record.status == ContentStatus.FAILED
    assert record.content_hash is None
    assert "connection reset" in record.error_message


@pytest.mark.asyncio
async def test_transient_fetch_error_is_retried(make_orchestrator):
    """Test a timeout followed by success ends in DONE."""
    url = "https://diabetes.org/food"
    orchestrator = make_orchestrator(FlakyFetcher({url: build_page()}, failures_before_success=1))

    summary = await orchestrator.run([url])

    assert summary.results[0].state == UrlState.DONE
    assert summary.results[0].attempts == 2


@pytest.mark.asyncio
async def test_client_error_is_not_retried(make_orchestrator):
    """Test a 404 fails without retries."""
    url = "https://diabetes.org/missing"
    fetcher = FakeFetcher({})
    orchestrator = make_orchestrator(fetcher)

    summary = await orchestrator.run([url])

    assert summary.results[0].state == UrlState.FAILED
    assert fetcher.calls == [url]


@pytest.mark.asyncio
async def test_content_too_short_fails_without_retry(make_orchestrator, tracking_store):
    """Test thin pages fail once and are recorded as failures."""
    url = "https://diabetes.org/thin"
    fetcher = FakeFetcher({url: "<html><body><main><p>Coming soon.</p></main></body></html>"})
    config = OrchestratorConfig(
        rate_limit_delay=0.0,
        retry=RetryConfig(max_retries=2, base_delay=0.0),
        normalizer={"content_format": "plain"},
    )
    orchestrator = make_orchestrator(fetcher, config=config)

    summary = await orchestrator.run([url])

    result = summary.results[0]
    assert result.state == UrlState.FAILED
    assert result.error_type == "ContentTooShort"
    assert fetcher.calls == [url]
    assert (await tracking_store.get(url)).status == ContentStatus.FAILED


@pytest.mark.asyncio
async def test_quality_rejection_is_recorded(make_orchestrator, tracking_store, vector_store):
    """Test rejected content keeps its hash and is not embedded."""
    url = "https://diabetes.org/about-diabetes"
    config = OrchestratorConfig(rate_limit_delay=0.0, quality=QualityConfig(min_quality_threshold=100))
    embedder = FakeEmbedder()
    orchestrator = make_orchestrator(FakeFetcher({url: build_page()}), embedder, config=config)

    summary = await orchestrator.run([url])

    result = summary.results[0]
    assert result.state == UrlState.QUALITY_REJECTED
    assert summary.metrics.rejected_urls == 1
    assert summary.metrics.failed_urls == 0
    assert summary.metrics.status == RunStatus.COMPLETED
    assert summary.errors == []
    assert embedder.calls == 0
    assert vector_store.records(INDEX) == {}

    record = await tracking_store.get(url)
    assert record.status == ContentStatus.QUALITY_REJECTED
    assert record.content_hash == result.content_hash
    assert record.content_hash is not None
    assert record.quality_score == result.quality_score
    assert record.rejection_reason

    again = await orchestrator.run([url])
    assert again.results[0].state == UrlState.SKIPPED
    assert (await tracking_store.get(url)).status == ContentStatus.QUALITY_REJECTED


@pytest.mark.asyncio
async def test_embedding_failure_keeps_partial_vectors(make_orchestrator, tracking_store, vector_store):
    """Test vectors embedded before an embedding failure are kept."""
    url = "https://diabetes.org/about-diabetes"
    orchestrator = make_orchestrator(FakeFetcher({url: build_page()}), FakeEmbedder(fail_from_call=2))

    summary = await orchestrator.run([url])

    result = summary.results[0]
    assert result.state == UrlState.FAILED
    assert result.error_type == "EmbeddingError"
    assert result.vectors_created == 1
    assert len(vector_store.records(INDEX)) == 1

    record = await tracking_store.get(url)
    assert record.status == ContentStatus.FAILED
    assert record.content_hash is None


@pytest.mark.asyncio
async def test_failure_keeps_previous_hash(make_orchestrator, tracking_store):
    """Test a failed re-process leaves the last good hash so the change is retried."""
    url = "https://diabetes.org/about-diabetes"
    fetcher = FakeFetcher({url: build_page()})
    good = make_orchestrator(fetcher)
    first = await good.run([url])
    original_hash = first.results[0].content_hash

    fetcher.pages[url] = build_page(extra_body="<p>New guidance on insulin pricing was published this week.</p>")
    broken = make_orchestrator(fetcher, FakeEmbedder(fail_from_call=1))
    failed = await broken.run([url])

    assert failed.results[0].state == UrlState.FAILED
    assert failed.results[0].change_type == ChangeType.MODIFIED
    record = await tracking_store.get(url)
    assert record.status == ContentStatus.FAILED
    assert record.content_hash == original_hash

    retried = await good.run([url])
    assert retried.results[0].state == UrlState.DONE
    assert retried.results[0].change_type == ChangeType.MODIFIED
    assert (await tracking_store.get(url)).status == ContentStatus.SUCCESS


@pytest.mark.asyncio
async def test_unchanged_after_failure_restores_status(make_orchestrator, tracking_store):
    """Test an unchanged page whose last attempt failed is restored to success."""
    url = "https://diabetes.org/about-diabetes"
    fetcher = FakeFetcher({url: build_page()})
    orchestrator = make_orchestrator(fetcher)
    await orchestrator.run([url])

    fetcher.failures[url] = FetchError(url, "HTTP 503", status_code=503)
    await orchestrator.run([url])
    assert (await tracking_store.get(url)).status == ContentStatus.FAILED

    del fetcher.failures[url]
    summary = await orchestrator.run([url])

    assert summary.results[0].state == UrlState.SKIPPED
    record = await tracking_store.get(url)
    assert record.status == ContentStatus.SUCCESS
    assert record.error_message is None


@pytest.mark.asyncio
async def test_tracking_write_failure_is_not_fatal(tmp_path, object_store, vector_store, fast_config):
    """Test a tracking write error does not change the URL outcome."""
    url = "https://diabetes.org/about-diabetes"
    store = FailingPutTrackingStore(str(tmp_path / "broken.db"))
    orchestrator = BatchOrchestrator(
        fetcher=FakeFetcher({url: build_page()}),
        embedder=FakeEmbedder(),
        vector_store=vector_store,
        tracking_store=store,
        object_store=object_store,
        config=fast_config,
    )

    summary = await orchestrator.run([url])

    assert summary.results[0].state == UrlState.DONE
    assert summary.metrics.failed_urls == 0
    store.close()


@pytest.mark.asyncio
async def test_batches_and_metrics(make_orchestrator, tracking_store):
    """Test URLs are deduplicated, batched and summarised into persisted metrics."""
    urls = _urls(4)
    orchestrator = make_orchestrator(FakeFetcher(_site(urls)))

    summary = await orchestrator.run(urls + [urls[0] + "/", urls[1].upper()], execution_id="run-test")

    assert summary.metrics.total_urls == 4
    assert summary.metrics.processed_urls == 4
    assert summary.metrics.new_content == 4
    assert summary.metrics.status == RunStatus.COMPLETED
    assert summary.metrics.vectors_created == sum(r.vectors_created for r in summary.results)
    assert summary.metrics.end_time >= summary.metrics.start_time

    runs = await tracking_store.list_run_metrics()
    assert [m.execution_id for m in runs] == ["run-test"]
    assert runs[0].processed_urls == 4


@pytest.mark.asyncio
async def test_batches_respect_size(make_orchestrator, fast_config):
    """Test no more than batch_size URLs are in flight at once."""
    urls = _urls(7)
    in_flight = 0
    peak = 0

    class SlowFetcher(FakeFetcher):
        async def fetch(self, url):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await super().fetch(url)

    orchestrator = make_orchestrator(SlowFetcher(_site(urls)))
    summary = await orchestrator.run(urls)

    assert summary.success_count == 7
    assert peak == fast_config.batch_size == 3


@pytest.mark.asyncio
async def test_cancel_before_start(make_orchestrator):
    """Test a pre-set cancellation event processes nothing."""
    urls = _urls(3)
    cancel = asyncio.Event()
    cancel.set()
    orchestrator = make_orchestrator(FakeFetcher(_site(urls)))

    summary = await orchestrator.run(urls, cancel_event=cancel)

    assert summary.results == []
    assert summary.metrics.status == RunStatus.CANCELLED
    assert summary.metrics.total_urls == 3


@pytest.mark.asyncio
async def test_cancel_between_batches(make_orchestrator):
    """Test cancelling during a run stops new batches but keeps finished work."""
    urls = _urls(5)
    cancel = asyncio.Event()
    config = OrchestratorConfig(rate_limit_delay=5.0, retry=RetryConfig(base_delay=0.0))
    orchestrator = make_orchestrator(
        FakeFetcher(_site(urls)), config=config, progress_callback=lambda result: cancel.set()
    )

    summary = await asyncio.wait_for(orchestrator.run(urls, cancel_event=cancel), timeout=2.0)

    assert len(summary.results) == 3
    assert all(r.state == UrlState.DONE for r in summary.results)
    assert summary.metrics.status == RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_invalid_url_is_reported(make_orchestrator):
    """Test a non-http URL becomes a failed result."""
    orchestrator = make_orchestrator(FakeFetcher({}))

    summary = await orchestrator.run(["ftp://diabetes.org/file"])

    assert summary.results[0].state == UrlState.FAILED
    assert "Invalid URL" in summary.results[0].error


@pytest.mark.asyncio
async def test_health_check(make_orchestrator):
    """Test every store is pinged."""
    orchestrator = make_orchestrator(FakeFetcher({}))

    status = await orchestrator.health_check()

    assert status == {"object_store": True, "tracking_store": True, "vector_store": True, "healthy": True}


class OutageObjectStore(FileObjectStore):
    """Raises StoreUnavailable for keys containing ``marker``, ``failures`` times."""

    def __init__(self, base_dir: str, marker: str, failures: int):
        super().__init__(base_dir)
        self.marker = marker
        self.remaining = failures
        self.put_calls: list[str] = []

    async def put(self, key, body, metadata=None):
        self.put_calls.append(key)
        if self.marker in key and self.remaining > 0:
            self.remaining -= 1
            raise StoreUnavailable(f"Object store write failed for {key}: connection reset")
        return await super().put(key, body, metadata)


class OutageVectorStore(InMemoryVectorStore):
    async def put_vectors(self, index, records):
        self.write_calls += 1
        raise StoreUnavailable(f"Vector store write failed for {index}: connection refused")


def _orchestrator(fetcher, tracking_store, object_store, vector_store, config) -> BatchOrchestrator:
    return BatchOrchestrator(
        fetcher=fetcher,
        embedder=FakeEmbedder(),
        vector_store=vector_store,
        tracking_store=tracking_store,
        object_store=object_store,
        config=config,
    )


@pytest.mark.asyncio
async def test_object_store_outage_fails_only_that_url(tmp_path, tracking_store, vector_store, fast_config):
    """Test an object store that stays down fails one URL after retries while the batch completes."""
    urls = _urls(3)
    store = OutageObjectStore(str(tmp_path / "objects"), marker="page-2", failures=10)
    orchestrator = _orchestrator(FakeFetcher(_site(urls)), tracking_store, store, vector_store, fast_config)

    summary = await orchestrator.run(urls)

    states = {r.url: r.state for r in summary.results}
    assert states == {urls[0]: UrlState.DONE, urls[1]: UrlState.FAILED, urls[2]: UrlState.DONE}
    failed = summary.results[1]
    assert failed.error_type == "StoreUnavailable"
    assert failed.attempts == 3
    assert len([k for k in store.put_calls if "page-2" in k]) == 3
    assert summary.metrics.status == RunStatus.COMPLETED_WITH_ERRORS

    record = await tracking_store.get(urls[1])
    assert record.status == ContentStatus.FAILED
    assert record.content_hash is None
    assert "connection reset" in record.error_message
    assert all(r.state.is_terminal for r in summary.results)


@pytest.mark.asyncio
async def test_object_store_blip_is_retried(tmp_path, tracking_store, vector_store, fast_config):
    """Test a single object store failure is retried and the URL still completes."""
    url = "https://diabetes.org/about-diabetes"
    store = OutageObjectStore(str(tmp_path / "objects"), marker="about-diabetes", failures=1)
    orchestrator = _orchestrator(FakeFetcher({url: build_page()}), tracking_store, store, vector_store, fast_config)

    summary = await orchestrator.run([url])

    assert summary.results[0].state == UrlState.DONE
    assert summary.results[0].attempts == 2
    assert (await tracking_store.get(url)).status == ContentStatus.SUCCESS


@pytest.mark.asyncio
async def test_vector_store_outage_fails_url(tracking_store, object_store, fast_config):
    """Test vector writes are retried, then the URL fails with no hash stored."""
    url = "https://diabetes.org/about-diabetes"
    vectors = OutageVectorStore()
    orchestrator = _orchestrator(FakeFetcher({url: build_page()}), tracking_store, object_store, vectors, fast_config)

    summary = await orchestrator.run([url])

    result = summary.results[0]
    assert result.state == UrlState.FAILED
    assert result.error_type == "StoreUnavailable"
    assert vectors.write_calls == 3
    assert await object_store.list("web_content/") == []

    record = await tracking_store.get(url)
    assert record.status == ContentStatus.FAILED
    assert record.content_hash is None


@pytest.mark.asyncio
async def test_quality_threshold_boundary(make_orchestrator, tracking_store, fast_config):
    """Test a score equal to the threshold passes and one point below is rejected."""
    url = "https://diabetes.org/about-diabetes"
    html = build_page()
    scout = make_orchestrator(FakeFetcher({}))
    score = scout.scorer.score(scout.normalizer(html, url).text)

    at_threshold = fast_config.model_copy(update={"quality": QualityConfig(min_quality_threshold=score)})
    passed = await make_orchestrator(FakeFetcher({url: html}), config=at_threshold).process_url(url)

    assert passed.quality_score == score
    assert passed.state == UrlState.DONE

    other = "https://diabetes.org/living-with-diabetes"
    above = fast_config.model_copy(update={"quality": QualityConfig(min_quality_threshold=score + 1)})
    rejected = await make_orchestrator(FakeFetcher({other: html}), config=above).process_url(other)

    assert rejected.quality_score == score
    assert rejected.state == UrlState.QUALITY_REJECTED
    record = await tracking_store.get(other)
    assert record.status == ContentStatus.QUALITY_REJECTED
    assert record.content_hash is not None


@pytest.mark.asyncio
async def test_similar_urls_get_distinct_objects(make_orchestrator, tracking_store, object_store):
    """Test URLs sharing a readable slug are stored under different keys."""
    dashed = "https://diabetes.org/type-2"
    nested = "https://diabetes.org/type/2"
    pages = {
        dashed: build_page(title="Type 2"),
        nested: build_page(title="Type 2 overview", extra_body="<p>Type 2 diabetes is the most common form.</p>"),
    }
    orchestrator = make_orchestrator(FakeFetcher(pages))

    summary = await orchestrator.run([dashed, nested])

    keys = [r.s3_key for r in summary.results]
    assert len(set(keys)) == 2
    assert sorted(await object_store.list("web_content/")) == sorted(keys)
    assert (await tracking_store.get(dashed)).s3_key != (await tracking_store.get(nested)).s3_key
    assert b"most common form" in await object_store.get((await tracking_store.get(nested)).s3_key)
    assert b"most common form" not in await object_store.get((await tracking_store.get(dashed)).s3_key)


@pytest.mark.asyncio
async def test_shrunk_page_drops_stale_chunks(make_orchestrator, vector_store):
    """Test chunks beyond the new end of a shortened page are removed."""
    url = "https://diabetes.org/about-diabetes"
    fetcher = FakeFetcher({url: build_page()})
    orchestrator = make_orchestrator(fetcher)
    first = await orchestrator.run([url])

    fetcher.pages[url] = build_page(paragraphs=DIABETES_PARAGRAPHS[:3])
    second = await orchestrator.run([url])

    before, after = first.results[0], second.results[0]
    assert after.change_type == ChangeType.MODIFIED
    assert after.chunks_created < before.chunks_created
    records = vector_store.records(INDEX)
    assert len(records) == after.chunks_created
    assert sorted(r.metadata["chunk_index"] for r in records.values()) == list(range(after.chunks_created))
