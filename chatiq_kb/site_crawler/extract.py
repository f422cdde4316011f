from typing import List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from chatiq_kb.site_crawler.types import PageMetadata

SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:")


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    return _text(tag.get("content"))


def extract_page_metadata(html: str) -> PageMetadata:
    """
    Pull a display title and description out of a page.

    Title prefers the first <h1>, then og:title, then <title>. Description
    prefers meta[name=description], then og:description.
    """
    soup = BeautifulSoup(html, "html.parser")

    h1 = soup.find("h1")
    title_tag = soup.find("title")
    title = (
        (_text(h1.get_text()) if h1 else None)
        or _meta_content(soup, property="og:title")
        or (_text(title_tag.get_text()) if title_tag else None)
    )
    description = _meta_content(soup, name="description") or _meta_content(soup, property="og:description")

    return PageMetadata(title=title, description=description)


def extract_links(html: str, page_url: str) -> List[str]:
    """Resolve every anchor href on the page against page_url, in document order."""
    soup = BeautifulSoup(html, "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith("#"):
            continue
        if href.lower().startswith(SKIPPED_SCHEMES):
            continue
        try:
            resolved = urljoin(page_url, href)
            # validates the port and bracketed hosts
            urlsplit(resolved).port
        except ValueError:
            continue
        links.append(resolved)
    return links
