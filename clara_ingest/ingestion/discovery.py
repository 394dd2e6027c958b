"""URL discovery: sitemaps, breadth-first link following and path generation."""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

from clara_ingest.core.config import DiscoveryConfig
from clara_ingest.core.constants import DEFAULT_RELEVANCE, RELEVANCE_RULES
from clara_ingest.core.errors import DiscoveryError, FetchError
from clara_ingest.core.utils import domain_root, is_same_domain, normalize_url
from clara_ingest.ingestion.crawler import PageFetcher, RobotsPolicy, load_robots_policy
from clara_ingest.ingestion.models import DiscoveredURL, DiscoveryMethod, DiscoveryResult
from clara_ingest.ingestion.parse_html import extract_links
from clara_ingest.ingestion.sitemap import get_sitemap_urls

logger = logging.getLogger(__name__)

# Lower sorts first; sitemap entries win over crawl duplicates
METHOD_PRIORITY = {
    DiscoveryMethod.SITEMAP: 0,
    DiscoveryMethod.LINK_FOLLOWING: 1,
    DiscoveryMethod.PATH_GENERATION: 2,
}


def estimate_relevance(url: str) -> float:
    """Path keyword heuristic in [0, 1]."""
    path = urlparse(url).path.lower()
    for keywords, relevance in RELEVANCE_RULES:
        if any(keyword in path for keyword in keywords):
            return relevance
    return DEFAULT_RELEVANCE


def path_allowed(url: str, allow_paths: list[str], block_paths: list[str]) -> bool:
    """Block patterns match anywhere in the path, allow patterns as prefixes."""
    path = urlparse(url).path.lower() or "/"
    if any(pattern.lower() in path for pattern in block_paths):
        return False
    if allow_paths:
        return any(path.startswith(prefix.lower()) for prefix in allow_paths)
    return True


class UrlDiscoverer:
    """Builds a deduplicated, filtered URL list for one domain."""

    def __init__(self, fetcher: PageFetcher):
        self.fetcher = fetcher

    def _accept(self, url: str, domain: str, config: DiscoveryConfig, robots: Optional[RobotsPolicy]) -> bool:
        if not url or not is_same_domain(url, domain):
            return False
        if not path_allowed(url, config.allow_paths, config.block_paths):
            return False
        if robots is not None and config.respect_robots_txt and not robots.can_fetch(url):
            logger.debug(f"Blocked by robots.txt: {url}")
            return False
        return True

    async def _from_sitemaps(
        self, domain: str, config: DiscoveryConfig, robots: Optional[RobotsPolicy]
    ) -> list[DiscoveredURL]:
        urls = await get_sitemap_urls(
            self.fetcher,
            domain,
            max_urls=config.max_urls,
            robots=robots,
            max_depth=config.max_sitemap_depth,
        )
        return [
            DiscoveredURL(url=url, discovery_method=DiscoveryMethod.SITEMAP, depth=0)
            for url in urls
        ]

    async def _page_links(self, url: str) -> Optional[list[str]]:
        """Links of one page, or None when the branch has to be abandoned."""
        try:
            page = await self.fetcher.fetch(url)
        except FetchError as e:
            logger.warning(f"Link following skipped {url}: {e}")
            return None
        return extract_links(page.html, page.final_url)

    async def _crawl(
        self, domain: str, config: DiscoveryConfig, robots: Optional[RobotsPolicy]
    ) -> tuple[list[DiscoveredURL], int, int]:
        """Breadth-first link following from the seed paths.

        A URL is recorded when first seen and fetched for links only while
        its depth is below ``max_depth``. A page that cannot be fetched stays
        in the result; only its links are not followed. Returns the URLs
        found and the numbers of pages fetched and failed.
        """
        root = domain_root(domain)
        found: dict[str, DiscoveredURL] = {}
        fetched = 0
        failures = 0

        frontier: list[str] = []
        for path in config.seed_paths:
            url = normalize_url(path, root + "/")
            if url not in found and self._accept(url, domain, config, robots):
                found[url] = DiscoveredURL(url=url, discovery_method=DiscoveryMethod.LINK_FOLLOWING, depth=0)
                frontier.append(url)

        for depth in range(config.max_depth):
            if not frontier or len(found) >= config.max_urls:
                break
            logger.info(f"Crawling depth {depth}: {len(frontier)} pages")
            next_level: list[str] = []

            for start in range(0, len(frontier), config.crawl_batch_size):
                batch = frontier[start : start + config.crawl_batch_size]
                results = await asyncio.gather(*(self._page_links(url) for url in batch))

                for links in results:
                    if links is None:
                        failures += 1
                        continue
                    fetched += 1
                    for link in links:
                        if len(found) >= config.max_urls:
                            break
                        if link in found or not self._accept(link, domain, config, robots):
                            continue
                        found[link] = DiscoveredURL(
                            url=link, discovery_method=DiscoveryMethod.LINK_FOLLOWING, depth=depth + 1
                        )
                        next_level.append(link)

                if start + config.crawl_batch_size < len(frontier) and config.crawl_delay:
                    await asyncio.sleep(config.crawl_delay)

            frontier = next_level[: config.max_links_per_level]

        return list(found.values()), fetched, failures

    async def _generate_paths(
        self, domain: str, config: DiscoveryConfig, robots: Optional[RobotsPolicy]
    ) -> list[DiscoveredURL]:
        root = domain_root(domain)
        urls: list[DiscoveredURL] = []
        for path in config.generated_paths:
            url = normalize_url(path, root + "/")
            if not self._accept(url, domain, config, robots):
                continue
            if config.verify_generated_paths and not await self.fetcher.head_ok(url):
                logger.debug(f"Generated path not found: {url}")
                continue
            urls.append(DiscoveredURL(url=url, discovery_method=DiscoveryMethod.PATH_GENERATION, depth=0))
        return urls

    async def discover(self, domain: str, config: Optional[DiscoveryConfig] = None) -> DiscoveryResult:
        """Discover URLs on ``domain``.

        Raises:
            DiscoveryError: if no source produced any URL and at least one
                source failed outright.
        """
        config = config or DiscoveryConfig()
        started = time.perf_counter()
        errors: list[str] = []
        logger.info(f"Starting URL discovery for {domain}")

        robots: Optional[RobotsPolicy] = None
        if config.respect_robots_txt or config.use_sitemaps:
            robots = await load_robots_policy(self.fetcher, domain)

        sitemap_urls: list[DiscoveredURL] = []
        if config.use_sitemaps:
            try:
                sitemap_urls = await self._from_sitemaps(domain, config, robots)
            except Exception as e:
                # Non-fatal: link following still runs
                logger.warning(f"Sitemap discovery failed for {domain}: {e}")
                errors.append(str(e))

        crawled: list[DiscoveredURL] = []
        try:
            crawled, fetched, failures = await self._crawl(domain, config, robots)
            if failures and not fetched:
                # Nothing answered, so the seeds themselves are unverified
                errors.append(f"{failures} page fetches failed during link following")
                crawled = []
        except Exception as e:
            logger.error(f"Link following failed for {domain}: {e}")
            errors.append(str(e))

        generated = await self._generate_paths(domain, config, robots)

        merged: dict[str, DiscoveredURL] = {}
        for item in sitemap_urls + crawled + generated:
            if item.url not in merged:
                merged[item.url] = item

        urls: list[DiscoveredURL] = []
        for item in merged.values():
            if not self._accept(item.url, domain, config, robots):
                continue
            relevance = estimate_relevance(item.url)
            if relevance < config.relevance_threshold:
                continue
            urls.append(item.model_copy(update={"estimated_relevance": relevance}))

        urls.sort(key=lambda u: (METHOD_PRIORITY[u.discovery_method], -u.estimated_relevance, u.url))
        urls = urls[: config.max_urls]

        if not urls and errors:
            raise DiscoveryError(f"URL discovery failed for {domain}: {'; '.join(errors)}")

        breakdown = {method.value: 0 for method in DiscoveryMethod}
        for item in urls:
            breakdown[item.discovery_method.value] += 1

        elapsed = time.perf_counter() - started
        logger.info(f"Discovery complete for {domain}: {len(urls)} URLs {breakdown} in {elapsed:.1f}s")
        return DiscoveryResult(
            urls=urls,
            total_discovered=len(urls),
            breakdown=breakdown,
            processing_time=elapsed,
        )
