"""Utility functions."""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urljoin, urlparse

import tldextract

# Bundled public suffix snapshot, no network lookups at runtime
_extract = tldextract.TLDExtract(suffix_list_urls=())


def normalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Normalize and canonicalize URL.

    Resolves relative references against ``base_url``, drops the fragment,
    lowercases scheme/host/path and removes a trailing slash (except root).
    Returns an empty string for anything that is not http(s).
    """
    if base_url:
        url = urljoin(base_url, url)
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return ""

    path = parsed.path or "/"
    # Remove trailing slash (except for root)
    if path.endswith("/") and len(path) > 1:
        path = path.rstrip("/") or "/"

    normalized = f"{parsed.scheme}://{parsed.netloc}{path}".lower()
    if parsed.query:
        normalized += f"?{parsed.query}"
    return normalized


def registered_domain(url_or_host: str) -> str:
    """Return the registered domain (e.g. ``diabetes.org``) of a URL or host."""
    extracted = _extract(url_or_host)
    if not extracted.suffix:
        return extracted.domain.lower()
    return f"{extracted.domain}.{extracted.suffix}".lower()


def is_same_domain(url: str, domain: str) -> bool:
    """Check if URL belongs to the target domain (subdomains included)."""
    try:
        return bool(domain) and registered_domain(url) == registered_domain(domain)
    except Exception:
        return False


def domain_root(domain: str) -> str:
    """Build the https root URL for a bare domain or URL."""
    if "://" in domain:
        parsed = urlparse(domain)
        return f"{parsed.scheme}://{parsed.netloc}"
    return f"https://{domain.strip('/')}"


def compute_content_hash(content: str | bytes) -> str:
    """Compute SHA256 hash of content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def url_to_key(url: str) -> str:
    """Convert a URL into a storage-safe key.

    The readable slug is not unique ("/type-2" and "/type/2" share it), so
    a short hash of the full URL is appended.
    """
    key = re.sub(r"^https?://", "", url)
    key = re.sub(r"[^a-zA-Z0-9]", "-", key)
    key = re.sub(r"-+", "-", key).strip("-")
    return f"{key.lower()}-{compute_content_hash(url)[:12]}"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ttl_from(moment: datetime, days: int) -> int:
    """Epoch-seconds expiry ``days`` after ``moment``."""
    return int((moment + timedelta(days=days)).timestamp())


def format_iso8601(dt: Optional[datetime]) -> Optional[str]:
    """Format datetime as ISO8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def parse_iso8601(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO8601 string to datetime."""
    if s is None:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception:
        return None


def normalize_text(text: str) -> str:
    """Normalize whitespace in text."""
    # Replace multiple whitespace with single space
    text = re.sub(r"\s+", " ", text)
    # Remove leading/trailing whitespace
    return text.strip()
