import logging
from typing import List, Tuple

from bs4 import BeautifulSoup

from chatiq_kb.errors import FetchError
from chatiq_kb.site_crawler.urls import is_http_url

logger = logging.getLogger(__name__)


def parse_sitemap(xml: str) -> List[str]:
    """Return the absolute http(s) <loc> entries of a sitemap, in document order."""
    soup = BeautifulSoup(xml, "xml")
    urls = []
    for loc in soup.find_all("loc"):
        value = loc.get_text().strip()
        if is_http_url(value):
            urls.append(value)
    return urls


async def fetch_sitemap_urls(fetcher, origin: str) -> Tuple[List[str], bool]:
    sitemap_url = f"{origin}/sitemap.xml"
    try:
        result = await fetcher.fetch(sitemap_url, html_only=False)
    except FetchError as e:
        logger.warning(f"Could not read sitemap: {e.reason}")
        return [], False

    if not result.ok or result.text is None:
        logger.info(f"No sitemap at {sitemap_url} (HTTP {result.status})")
        return [], False

    urls = parse_sitemap(result.text)
    logger.info(f"Sitemap lists {len(urls)} URLs")
    return urls, True
