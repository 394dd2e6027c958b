"""Sitemap parsing and URL discovery."""

import logging
import re
from typing import Optional
from xml.etree import ElementTree as ET

from clara_ingest.core.constants import COMMON_SITEMAP_PATHS
from clara_ingest.core.utils import domain_root, is_same_domain, normalize_url
from clara_ingest.ingestion.crawler import PageFetcher, RobotsPolicy

logger = logging.getLogger(__name__)

LOC_PATTERN = re.compile(r"<loc>\s*([^<\s]+)\s*</loc>", re.IGNORECASE)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def parse_sitemap(xml_text: str) -> tuple[list[str], list[str]]:
    """Parse a sitemap document.

    Returns ``(page_urls, child_sitemaps)``. Handles both ``<urlset>`` and
    ``<sitemapindex>`` documents, with or without the sitemaps.org
    namespace. Falls back to a ``<loc>`` regex when the XML is malformed.
    """
    pages: list[str] = []
    children: list[str] = []
    try:
        root = ET.fromstring(xml_text.strip().encode("utf-8"))
    except ET.ParseError:
        logger.debug("Sitemap is not well-formed XML, using <loc> fallback")
        return [m.strip() for m in LOC_PATTERN.findall(xml_text)], []

    is_index = _local_name(root.tag) == "sitemapindex"
    for elem in root:
        if _local_name(elem.tag) not in ("url", "sitemap"):
            continue
        for child in elem:
            if _local_name(child.tag) == "loc" and child.text and child.text.strip():
                (children if is_index else pages).append(child.text.strip())
                break

    if not pages and not children:
        pages = [m.strip() for m in LOC_PATTERN.findall(xml_text)]
    return pages, children


async def fetch_sitemap_urls(
    fetcher: PageFetcher,
    sitemap_url: str,
    domain: str,
    max_urls: Optional[int] = None,
    max_depth: int = 3,
    _seen: Optional[set[str]] = None,
) -> list[str]:
    """Fetch URLs from sitemap (supports sitemap index and regular sitemaps)."""
    seen = _seen if _seen is not None else set()
    if sitemap_url in seen:
        return []
    seen.add(sitemap_url)

    text = await fetcher.get_text(sitemap_url)
    if text is None:
        logger.warning(f"Could not fetch sitemap {sitemap_url}")
        return []

    pages, children = parse_sitemap(text)
    urls: list[str] = []
    for loc in pages:
        if max_urls is not None and len(urls) >= max_urls:
            break
        url = normalize_url(loc)
        if url and is_same_domain(url, domain):
            urls.append(url)

    if children and max_depth > 0:
        for child in children:
            if max_urls is not None and len(urls) >= max_urls:
                break
            remaining = max_urls - len(urls) if max_urls is not None else None
            # Recursively fetch from child sitemap
            urls.extend(
                await fetch_sitemap_urls(fetcher, child, domain, remaining, max_depth - 1, seen)
            )

    logger.info(f"Added {len(urls)} URLs from sitemap {sitemap_url}")
    return urls


async def discover_sitemaps(fetcher: PageFetcher, domain: str, robots: Optional[RobotsPolicy] = None) -> list[str]:
    """Discover sitemap URLs from robots.txt and common locations."""
    base_url = domain_root(domain)
    found: list[str] = []

    if robots is not None:
        for sitemap_url in robots.sitemaps():
            if sitemap_url not in found:
                logger.info(f"Found in robots.txt: {sitemap_url}")
                found.append(sitemap_url)

    for path in COMMON_SITEMAP_PATHS:
        url = f"{base_url}{path}"
        if url in found:
            continue
        if await fetcher.head_ok(url):
            logger.info(f"Found sitemap: {url}")
            found.append(url)

    return found


async def get_sitemap_urls(
    fetcher: PageFetcher,
    domain: str,
    max_urls: Optional[int] = None,
    robots: Optional[RobotsPolicy] = None,
    max_depth: int = 3,
) -> list[str]:
    """Collect page URLs from every sitemap of a domain, deduplicated in order."""
    seen_sitemaps: set[str] = set()
    urls: list[str] = []
    seen: set[str] = set()

    for sitemap_url in await discover_sitemaps(fetcher, domain, robots):
        remaining = max_urls - len(urls) if max_urls is not None else None
        for url in await fetch_sitemap_urls(fetcher, sitemap_url, domain, remaining, max_depth, seen_sitemaps):
            if url not in seen:
                seen.add(url)
                urls.append(url)
        if max_urls is not None and len(urls) >= max_urls:
            break

    return urls
