"""Tests for content hashing and change detection."""

import pytest

from clara_ingest.core.utils import ttl_from, utcnow
from clara_ingest.ingestion.change_detection import ChangeDetector, ContentHasher
from clara_ingest.ingestion.cleaners import normalize_for_hash
from clara_ingest.ingestion.models import ChangeType, ContentRecord, ContentStatus
from clara_ingest.ingestion.parse_html import normalize
from clara_ingest.tests.fakes import DIABETES_PARAGRAPHS, build_page

URL = "https://diabetes.org/about-diabetes/type-1"
TEXT = " ".join(DIABETES_PARAGRAPHS)


def _record(url: str, digest: str) -> ContentRecord:
    now = utcnow()
    return ContentRecord(
        url=url,
        content_hash=digest,
        content_length=100,
        status=ContentStatus.SUCCESS,
        crawl_timestamp=now,
        ttl=ttl_from(now, 90),
    )


class BrokenTrackingStore:
    async def get(self, url):
        raise ConnectionError("tracking table unreachable")


def test_hash_is_stable():
    """Test repeated hashing of the same text gives the same digest."""
    hasher = ContentHasher()

    assert hasher.hash(TEXT) == hasher.hash(TEXT)
    assert len(hasher.hash(TEXT)) == 64


def test_hash_ignores_whitespace_and_case():
    """Test whitespace runs and letter case do not change the digest."""
    hasher = ContentHasher()

    assert hasher.hash("Insulin  helps\n\nglucose") == hasher.hash("insulin helps glucose")


def test_hash_ignores_date_stamps():
    """Test "last updated" stamps are masked before hashing."""
    hasher = ContentHasher()

    assert hasher.hash(f"{TEXT} Last updated: March 3, 2024") == hasher.hash(f"{TEXT} Last updated: June 19, 2025")
    assert hasher.hash(f"Page last reviewed: 01/02/2023. {TEXT}") == hasher.hash(f"Page last reviewed: 11/12/2024. {TEXT}")
    assert hasher.hash(f"{TEXT} Generated 2024-03-01T10:00:00Z") == hasher.hash(f"{TEXT} Generated 2025-01-09T08:30:00Z")


def test_hash_ignores_time_of_date_stamp():
    """Test the clock time after a stamped date is masked with the date."""
    hasher = ContentHasher()

    assert hasher.hash(f"{TEXT} Last updated: 2024-03-05 10:00") == hasher.hash(f"{TEXT} Last updated: 2024-03-05 11:30")
    assert hasher.hash(f"{TEXT} Updated March 5, 2024, 3:15 PM") == hasher.hash(f"{TEXT} Updated March 5, 2024, 9:40 AM")
    assert normalize_for_hash("Last updated: 03/05/2024 at 09:30 UTC. Insulin") == "last updated: <date>. insulin"


def test_hash_of_page_restamped_with_new_time():
    """Test a page that only changes the time in its stamp keeps its digest."""
    hasher = ContentHasher()
    url = "https://diabetes.org/living-with-diabetes"
    morning = build_page(extra_body="<p>Last updated: 2024-03-05 10:00</p>")
    noon = build_page(extra_body="<p>Last updated: 2024-03-05 11:30</p>")

    assert hasher.hash(normalize(morning, url).text) == hasher.hash(normalize(noon, url).text)


def test_prose_dates_are_kept():
    """Test a date that is not a stamp still changes the digest."""
    hasher = ContentHasher()

    assert hasher.hash("The study began in March 2020.") != hasher.hash("The study began in March 2021.")


def test_normalize_for_hash_placeholder():
    """Test the stamp keyword is kept and only the date is replaced."""
    assert normalize_for_hash("**Last Updated**: 2024-05-01") == "**last updated**: <date>"


def test_hash_of_normalized_page_ignores_changed_date_stamp():
    """Test pages differing only in their date stamp hash identically."""
    hasher = ContentHasher()
    original = build_page(extra_body="<p>Last updated: March 3, 2024</p>")
    restamped = build_page(extra_body="<p>Last updated: September 30, 2025</p>")
    url = "https://diabetes.org/living-with-diabetes"

    assert hasher.hash(normalize(original, url).text) == hasher.hash(normalize(restamped, url).text)


@pytest.mark.asyncio
async def test_first_seen_url_is_new(tracking_store):
    """Test a URL with no record is new and changed."""
    detector = ChangeDetector(tracking_store)
    result = await detector.has_changed(URL, detector.hash(TEXT))

    assert result.is_new is True
    assert result.changed is True
    assert result.change_type == ChangeType.NEW


@pytest.mark.asyncio
async def test_identical_content_unchanged(tracking_store):
    """Test identical content on a second call is unchanged."""
    detector = ChangeDetector(tracking_store)
    digest = detector.hash(TEXT)
    await tracking_store.put(_record(URL, digest))

    result = await detector.has_changed(URL, detector.hash(TEXT))

    assert result.changed is False
    assert result.is_new is False
    assert result.previous_hash == digest
    assert result.change_type == ChangeType.UNCHANGED


@pytest.mark.asyncio
async def test_whitespace_only_change_unchanged(tracking_store):
    """Test content differing only in whitespace run length is unchanged."""
    detector = ChangeDetector(tracking_store)
    await tracking_store.put(_record(URL, detector.hash(TEXT)))

    result = await detector.has_changed(URL, detector.hash(TEXT.replace(" ", "   ")))

    assert result.changed is False


@pytest.mark.asyncio
async def test_material_change_detected(tracking_store):
    """Test a materially different sentence is a change."""
    detector = ChangeDetector(tracking_store)
    await tracking_store.put(_record(URL, detector.hash(TEXT)))

    result = await detector.has_changed(URL, detector.hash(TEXT + " New insulin pumps are now covered."))

    assert result.changed is True
    assert result.is_new is False
    assert result.change_type == ChangeType.MODIFIED


@pytest.mark.asyncio
async def test_lookup_failure_fails_open():
    """Test a tracking lookup failure reports the content as changed."""
    detector = ChangeDetector(BrokenTrackingStore())
    result = await detector.has_changed(URL, detector.hash(TEXT))

    assert result.changed is True
    assert result.lookup_failed is True
