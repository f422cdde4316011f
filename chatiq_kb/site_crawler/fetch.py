import asyncio
import logging
from typing import Optional

import aiohttp

from chatiq_kb.errors import FetchError
from chatiq_kb.site_crawler.types import DEFAULT_TIMEOUT_MS, FetchResult

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; ChatIQ/1.0; +https://chatiq.ai)"
# token matched against robots.txt User-agent groups
ROBOTS_AGENT_TOKEN = "chatiq"


class PageFetcher:
    """
    Timeout-bounded HTTP GET over a single aiohttp session.

    Use as an async context manager. Each call to fetch() gets its own
    timeout; a timeout or transport error raises FetchError, while non-2xx
    responses are returned to the caller as-is.

    Example:
        async with PageFetcher(timeout_ms=5000) as fetcher:
            result = await fetcher.fetch("https://example.com/docs")
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        user_agent: str = USER_AGENT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.timeout_ms = timeout_ms
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "PageFetcher":
        if self._session is None:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
        return self

    async def __aexit__(self, *exc_info):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, html_only: bool = True) -> FetchResult:
        """
        GET a URL.

        Args:
            url: Absolute URL to fetch
            html_only: Only read the body of text/html responses

        Returns:
            FetchResult; text is None when the body was not read
        """
        if self._session is None:
            raise RuntimeError("PageFetcher must be used as an async context manager")

        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
        try:
            async with self._session.get(url, timeout=timeout, allow_redirects=True) as response:
                result = FetchResult(
                    url=url,
                    status=response.status,
                    content_type=response.headers.get("Content-Type", ""),
                )
                if result.ok and (result.is_html or not html_only):
                    result.text = await response.text(errors="replace")
                return result
        except asyncio.TimeoutError:
            raise FetchError(url, f"timed out after {self.timeout_ms} ms")
        except aiohttp.ClientError as e:
            raise FetchError(url, str(e) or e.__class__.__name__)
