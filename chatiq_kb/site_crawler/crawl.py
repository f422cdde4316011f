import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from chatiq_kb.errors import BlockedHostError, FetchError, InvalidBaseUrlError
from chatiq_kb.site_crawler.extract import extract_links, extract_page_metadata
from chatiq_kb.site_crawler.fetch import PageFetcher
from chatiq_kb.site_crawler.robots import fetch_robots_rules, is_path_blocked
from chatiq_kb.site_crawler.sitemap import fetch_sitemap_urls
from chatiq_kb.site_crawler.types import CrawlOptions, CrawlResult, RobotsRules, UrlNode
from chatiq_kb.site_crawler.urls import (
    is_allowed_by_prefix,
    is_blocked_host,
    normalize_url,
    parse_http_url,
    url_origin,
    url_path,
)

logger = logging.getLogger(__name__)

# on_page(url, total_nodes, queued)
PageCallback = Callable[[str, int, int], None]


@dataclass
class _NodeRecord:
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    children: List[int] = field(default_factory=list)


class CrawlSession:
    """
    State of one breadth-first crawl.

    Nodes live in a flat arena addressed by integer index; the queue, the
    child lists and the URL index all refer to nodes by that index. Nothing
    here is shared between sessions, so independent crawls can run side by
    side.
    """

    def __init__(
        self,
        options: CrawlOptions,
        fetcher,
        cancel_event: Optional[asyncio.Event] = None,
        on_page: Optional[PageCallback] = None,
    ):
        base = parse_http_url(options.base_url)
        if base is None:
            raise InvalidBaseUrlError(f"Invalid base URL: {options.base_url!r}. Include the protocol (https://).")
        if is_blocked_host(base.hostname):
            raise BlockedHostError("Base URL host is not allowed.")

        self.options = options
        self.fetcher = fetcher
        self.cancel_event = cancel_event
        self.on_page = on_page

        self.origin = url_origin(base)
        prefix = options.allow_path_prefix or url_path(base)
        self.prefix = prefix if prefix.startswith("/") else f"/{prefix}"
        self.robots = RobotsRules()

        self.queue: Deque[Tuple[int, int]] = deque()  # (node index, depth)
        self.visited: Set[str] = set()
        self.nodes: List[_NodeRecord] = []
        self.index: Dict[str, int] = {}
        self.errors: List[str] = []
        self.cancelled = False

        self.root = self._add_node(normalize_url(base), parent=None)
        self.queue.append((self.root, 0))

    @property
    def total(self) -> int:
        return len(self.nodes)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _add_node(self, url: str, parent: Optional[int]) -> int:
        node_id = len(self.nodes)
        self.nodes.append(_NodeRecord(url=url))
        self.index[url] = node_id
        self.visited.add(url)
        if parent is not None:
            self.nodes[parent].children.append(node_id)
        return node_id

    def _admit(self, url: str, check_robots: bool) -> Optional[str]:
        """Apply the scope guards to a candidate URL; return its normalized form if it passes."""
        parsed = parse_http_url(url)
        if parsed is None:
            return None
        if is_blocked_host(parsed.hostname):
            return None
        if url_origin(parsed) != self.origin:
            return None
        path = url_path(parsed)
        if not is_allowed_by_prefix(path, self.prefix):
            return None
        if check_robots and is_path_blocked(path, self.robots):
            return None
        return normalize_url(parsed)

    async def _seed_from_sitemap(self):
        sitemap_urls, _ = await fetch_sitemap_urls(self.fetcher, self.origin)
        seeded = 0
        for url in sitemap_urls:
            if self.total >= self.options.max_pages:
                logger.info(f"Reached page limit of {self.options.max_pages} while reading sitemap")
                break
            normalized = self._admit(url, check_robots=False)
            if normalized is None or normalized in self.visited:
                continue
            node_id = self._add_node(normalized, parent=self.root)
            self.queue.append((node_id, 1))
            seeded += 1
        if seeded:
            logger.info(f"Seeded {seeded} URLs from sitemap")

    async def _pause(self):
        delay = self.options.delay_ms / 1000
        if delay <= 0:
            return
        if self.cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _record_error(self, message: str):
        logger.warning(message)
        self.errors.append(message)

    async def _process(self, node_id: int, depth: int):
        record = self.nodes[node_id]
        url = record.url
        logger.info(f"Crawling {url} at depth {depth}")

        try:
            result = await self.fetcher.fetch(url)
        except FetchError as e:
            self._record_error(f"Failed to fetch {url}: {e.reason}")
            return

        if not result.ok:
            self._record_error(f"HTTP {result.status} for {url}")
            return

        if not result.is_html:
            logger.info(f"Skipping {url}: not HTML ({result.content_type or 'unknown content type'})")
            return

        html = result.text or ""
        metadata = extract_page_metadata(html)
        record.title = metadata.title or record.title
        record.description = metadata.description or record.description

        if depth >= self.options.max_depth:
            return

        new_urls = 0
        for link in extract_links(html, url):
            if self.total >= self.options.max_pages:
                logger.info(f"Reached page limit of {self.options.max_pages} pages")
                break
            normalized = self._admit(link, check_robots=True)
            if normalized is None or normalized in self.visited:
                continue
            child_id = self._add_node(normalized, parent=node_id)
            self.queue.append((child_id, depth + 1))
            new_urls += 1

        if new_urls > 0:
            logger.info(f"Found {new_urls} new links on {url}")

    async def run(self) -> CrawlResult:
        logger.info(
            f"Starting crawl of {self.nodes[self.root].url} with "
            f"max_depth={self.options.max_depth}, "
            f"prefix={self.prefix}, "
            f"max_pages={self.options.max_pages}"
        )

        self.robots, _ = await fetch_robots_rules(self.fetcher, self.origin)
        if self.options.use_sitemap:
            await self._seed_from_sitemap()

        while self.queue:
            if self.is_cancelled:
                logger.info("Cancellation requested, returning partial tree")
                self.cancelled = True
                break

            node_id, depth = self.queue.popleft()
            if depth > self.options.max_depth:
                continue

            url = self.nodes[node_id].url
            if is_path_blocked(urlsplit(url).path or "/", self.robots):
                logger.info(f"Skipping {url}: blocked by robots.txt")
                continue

            await self._process(node_id, depth)
            if self.on_page is not None:
                self.on_page(url, self.total, len(self.queue))

            if self.queue:
                await self._pause()

        logger.info(f"Crawl completed. Discovered {self.total} URLs with {len(self.errors)} errors")
        return CrawlResult(
            root=self._build_tree(self.root),
            total=self.total,
            errors=list(self.errors),
            cancelled=self.cancelled,
        )

    def _build_tree(self, node_id: int) -> UrlNode:
        record = self.nodes[node_id]
        return UrlNode(
            url=record.url,
            title=record.title,
            description=record.description,
            children=[self._build_tree(child_id) for child_id in record.children],
        )


async def discover_urls(
    options: CrawlOptions,
    fetcher=None,
    cancel_event: Optional[asyncio.Event] = None,
    on_page: Optional[PageCallback] = None,
) -> CrawlResult:
    """
    Discover the importable pages of a site.

    Args:
        options: Crawl bounds (base URL, depth, path prefix, pacing, page cap)
        fetcher: Object with an async fetch(url, html_only=True) method; a
            PageFetcher is opened for the crawl when omitted
        cancel_event: When set, the crawl stops and returns what it has
        on_page: Called after every processed page

    Returns:
        CrawlResult with the URL tree and the per-page errors

    Raises:
        InvalidBaseUrlError: base_url is not an absolute http(s) URL
        BlockedHostError: base_url points at a local or private host
    """
    if fetcher is not None:
        return await CrawlSession(options, fetcher, cancel_event, on_page).run()

    # validate before opening a network session
    session = CrawlSession(options, None, cancel_event, on_page)
    async with PageFetcher(timeout_ms=options.timeout_ms) as page_fetcher:
        session.fetcher = page_fetcher
        return await session.run()
