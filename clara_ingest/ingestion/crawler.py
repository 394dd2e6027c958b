"""Respectful async page fetcher."""

import asyncio
import logging
import time
from typing import Optional
from urllib.robotparser import RobotFileParser

import httpx

from clara_ingest.core.config import settings
from clara_ingest.core.errors import FetchError
from clara_ingest.core.utils import domain_root, utcnow
from clara_ingest.ingestion.models import FetchedPage

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class PageFetcher:
    """Fetches pages over a shared ``httpx.AsyncClient``.

    Raises ``FetchError`` for network failures, timeouts and non-2xx
    responses. 4xx responses other than 408/425/429 are marked
    non-retryable.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = None,
        timeout: float = None,
        rate_limit_rps: Optional[float] = None,
    ):
        self.user_agent = user_agent or settings.user_agent
        self.rate_limit_rps = rate_limit_rps
        self.last_request_time = 0.0
        self._rate_lock = asyncio.Lock()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.request_timeout,
            follow_redirects=True,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
        )

    async def _rate_limit(self) -> None:
        """Apply rate limiting."""
        if not self.rate_limit_rps:
            return
        async with self._rate_lock:
            elapsed = time.monotonic() - self.last_request_time
            min_interval = 1.0 / self.rate_limit_rps
            if elapsed < min_interval:
                await asyncio.sleep(min_interval - elapsed)
            self.last_request_time = time.monotonic()

    async def _get(self, url: str) -> httpx.Response:
        await self._rate_limit()

        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(url, f"Timeout: {e}") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"Network error: {e}") from e

        if not response.is_success:
            retryable = response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500
            raise FetchError(
                url,
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=retryable,
            )
        return response

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch a single HTML page."""
        response = await self._get(url)

        content_type = response.headers.get("content-type", "").lower()
        if content_type and "html" not in content_type and "xml" not in content_type:
            raise FetchError(url, f"Unsupported content type {content_type}", response.status_code, retryable=False)

        return FetchedPage(
            url=url,
            final_url=str(response.url),
            status_code=response.status_code,
            html=response.text,
            fetched_at=utcnow(),
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
        )

    async def head_ok(self, url: str) -> bool:
        """Check that a URL answers 200 to HEAD."""
        try:
            response = await self.client.head(url)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_text(self, url: str) -> Optional[str]:
        """GET a URL of any content type and return its body, or None on failure."""
        try:
            response = await self._get(url)
            return response.text
        except FetchError as e:
            logger.debug(f"Could not fetch {url}: {e}")
            return None

    async def close(self) -> None:
        """Close HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "PageFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class RobotsPolicy:
    """robots.txt rules for one site."""

    def __init__(self, user_agent: str, parser: Optional[RobotFileParser] = None):
        self.user_agent = user_agent
        self.parser = parser

    @classmethod
    def from_text(cls, text: Optional[str], user_agent: str) -> "RobotsPolicy":
        if not text:
            return cls(user_agent)
        parser = RobotFileParser()
        parser.parse(text.splitlines())
        return cls(user_agent, parser)

    def can_fetch(self, url: str) -> bool:
        """Check if URL can be fetched according to robots.txt."""
        if self.parser is None:
            return True
        try:
            return self.parser.can_fetch(self.user_agent, url)
        except Exception:
            return True

    def sitemaps(self) -> list[str]:
        if self.parser is None:
            return []
        return list(self.parser.site_maps() or [])


async def load_robots_policy(fetcher: PageFetcher, domain: str) -> RobotsPolicy:
    """Fetch and parse robots.txt for a domain."""
    robots_url = f"{domain_root(domain)}/robots.txt"
    text = await fetcher.get_text(robots_url)
    if text is None:
        logger.info(f"No robots.txt at {robots_url}")
    else:
        logger.info("Robots.txt parsed successfully")
    return RobotsPolicy.from_text(text, fetcher.user_agent)
