"""In-memory collaborators and page builders shared by the tests."""

import hashlib
import math
from typing import Optional

import httpx

from clara_ingest.core.errors import EmbeddingError, FetchError
from clara_ingest.core.utils import utcnow
from clara_ingest.ingestion.models import Embedding, FetchedPage, SearchHit, VectorRecord

DIABETES_PARAGRAPHS = [
    "Diabetes is a chronic condition that affects how your body turns food into energy. "
    "Most of the food you eat is broken down into glucose and released into your bloodstream. "
    "When blood sugar goes up, it signals your pancreas to release insulin.",
    "With type 1 diabetes the body does not make insulin, so daily insulin treatment is needed. "
    "With type 2 diabetes the body does not use insulin well and cannot keep blood sugar at normal levels. "
    "Prediabetes means blood sugar levels are higher than normal but not yet high enough for a diagnosis.",
    "An A1C test measures your average blood sugar over the past three months. "
    "Hypoglycemia happens when glucose drops too low, while hyperglycemia means glucose is too high. "
    "Counting each carbohydrate you eat helps you plan meals and manage diabetes every day.",
    "Gestational diabetes develops during pregnancy in women who did not already have diabetes. "
    "Healthy eating, regular activity and the right treatment plan can keep glucose in your target range. "
    "Talk with your care team about how often to check your blood sugar.",
    "People living with diabetes can use a glucose meter or a continuous glucose monitor at home. "
    "Keeping a log of readings, meals and insulin doses shows patterns that guide changes to treatment. "
    "Share the log with your doctor at every visit.",
    "Over time, high blood sugar can damage the heart, kidneys, eyes and nerves. "
    "Regular screening for these complications lets problems be found and treated early. "
    "Many people with type 2 diabetes lower their A1C by losing a modest amount of weight.",
]


def build_page(
    title: str = "Understanding Diabetes",
    headings: Optional[list[str]] = None,
    paragraphs: Optional[list[str]] = None,
    extra_body: str = "",
) -> str:
    """Small HTML page with navigation chrome around a <main> element."""
    headings = ["What is diabetes?", "Managing blood sugar"] if headings is None else headings
    paragraphs = DIABETES_PARAGRAPHS if paragraphs is None else paragraphs
    body = []
    # One heading before every second paragraph
    for i, paragraph in enumerate(paragraphs):
        if i % 2 == 0 and i // 2 < len(headings):
            body.append(f"<h2>{headings[i // 2]}</h2>")
        body.append(f"<p>{paragraph}</p>")
    return (
        f"<html><head><title>{title}</title><script>var tracking = 1;</script></head>"
        "<body><nav><a href='/'>Home</a> <a href='/donate'>Donate</a></nav>"
        f"<main>{''.join(body)}{extra_body}</main>"
        "<footer>Copyright American Diabetes Association</footer></body></html>"
    )


class FakeFetcher:
    """Serves canned HTML; URLs in ``failures`` always raise."""

    def __init__(self, pages: dict[str, str], failures: Optional[dict[str, Exception]] = None):
        self.pages = pages
        self.failures = failures or {}
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        if url in self.failures:
            raise self.failures[url]
        if url not in self.pages:
            raise FetchError(url, "HTTP 404", status_code=404, retryable=False)
        return FetchedPage(url=url, final_url=url, html=self.pages[url], fetched_at=utcnow())


class FakeEmbedder:
    """Deterministic hash-based vectors; optionally fails from the n-th call on."""

    def __init__(self, dimensions: int = 8, fail_from_call: Optional[int] = None):
        self.model_name = "fake-embedder"
        self.vector_size = dimensions
        self.fail_from_call = fail_from_call
        self.calls = 0

    async def embed(self, text: str, model: Optional[str] = None) -> Embedding:
        self.calls += 1
        if self.fail_from_call is not None and self.calls >= self.fail_from_call:
            raise EmbeddingError("embedding API unavailable")
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vector = [b / 255.0 + 0.01 for b in digest[: self.vector_size]]
        return Embedding(vector=vector, dimensions=len(vector))


class InMemoryVectorStore:
    """Dict-backed vector store with upsert semantics."""

    def __init__(self):
        self.indexes: dict[str, dict[str, VectorRecord]] = {}
        self.write_calls = 0

    async def put_vectors(self, index: str, records: list[VectorRecord]) -> int:
        self.write_calls += 1
        store = self.indexes.setdefault(index, {})
        for record in records:
            store[record.key] = record
        return len(records)

    async def delete_chunks_from(self, index: str, url: str, first_index: int) -> None:
        store = self.indexes.get(index, {})
        stale = [
            key
            for key, record in store.items()
            if record.metadata.get("url") == url and record.metadata.get("chunk_index", 0) >= first_index
        ]
        for key in stale:
            del store[key]

    async def search(self, index, query_vector, k, filter=None) -> list[SearchHit]:
        def cosine(a, b):
            dot = sum(x * y for x, y in zip(a, b))
            return dot / (math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b)))

        hits = [
            SearchHit(id=key, score=cosine(query_vector, record.vector), metadata=record.metadata)
            for key, record in self.indexes.get(index, {}).items()
            if not filter or all(record.metadata.get(f) == v for f, v in filter.items())
        ]
        return sorted(hits, key=lambda h: h.score, reverse=True)[:k]

    async def ping(self) -> bool:
        return True

    def records(self, index: str = "clara_content_v1") -> dict[str, VectorRecord]:
        return self.indexes.get(index, {})


def site_transport(routes: dict[str, tuple[int, str, str]], head_ok: Optional[set[str]] = None) -> httpx.MockTransport:
    """Mock transport serving ``url -> (status, body, content_type)``.

    HEAD requests answer 200 for URLs in ``head_ok`` or ``routes`` and 404
    otherwise; unknown GETs are 404.
    """
    head_ok = head_ok or set()

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.method == "HEAD":
            return httpx.Response(200 if url in head_ok or url in routes else 404)
        if url not in routes:
            return httpx.Response(404, text="Not found", headers={"content-type": "text/html"})
        status, body, content_type = routes[url]
        return httpx.Response(status, text=body, headers={"content-type": content_type})

    return httpx.MockTransport(handler)
