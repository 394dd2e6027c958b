"""Content hashing and change detection against the tracking store."""

import logging
from typing import Optional

from pydantic import BaseModel

from clara_ingest.core.interfaces import TrackingStore
from clara_ingest.core.logging import short_hash
from clara_ingest.core.utils import compute_content_hash
from clara_ingest.ingestion.cleaners import normalize_for_hash
from clara_ingest.ingestion.models import ChangeType, ContentRecord

logger = logging.getLogger(__name__)


class ContentHasher:
    """Stable SHA-256 digest of normalized text.

    Whitespace runs, letter case and "last updated" date stamps do not
    affect the digest, so a re-crawl of unchanged prose hashes identically.
    """

    def hash(self, text: str) -> str:
        return compute_content_hash(normalize_for_hash(text))


class ChangeDetection(BaseModel):
    """Result of a change check."""

    changed: bool
    is_new: bool
    digest: str
    previous_hash: Optional[str] = None
    previous_record: Optional[ContentRecord] = None
    lookup_failed: bool = False

    @property
    def change_type(self) -> ChangeType:
        if self.is_new:
            return ChangeType.NEW
        return ChangeType.MODIFIED if self.changed else ChangeType.UNCHANGED


class ChangeDetector:
    """Compares a digest against the last tracking record for a URL."""

    def __init__(self, tracking_store: TrackingStore, hasher: Optional[ContentHasher] = None):
        self.tracking_store = tracking_store
        self.hasher = hasher or ContentHasher()

    def hash(self, text: str) -> str:
        return self.hasher.hash(text)

    async def has_changed(self, url: str, digest: str) -> ChangeDetection:
        """Detect if content has changed since last crawl.

        A lookup failure fails open: the content is treated as changed.
        """
        try:
            previous = await self.tracking_store.get(url)
        except Exception as e:
            logger.error(f"Content change lookup failed for {url}, processing anyway: {e}")
            return ChangeDetection(changed=True, is_new=False, digest=digest, lookup_failed=True)

        if previous is None:
            logger.info(f"First time processing {url} - no previous record found")
            return ChangeDetection(changed=True, is_new=True, digest=digest)

        changed = previous.content_hash != digest
        if changed:
            logger.info(
                f"Content changed for {url}: {short_hash(previous.content_hash)} -> {short_hash(digest)}"
            )
        else:
            logger.info(f"Content unchanged for {url}: {short_hash(digest)}")
        return ChangeDetection(
            changed=changed,
            is_new=False,
            digest=digest,
            previous_hash=previous.content_hash,
            previous_record=previous,
        )
