import os

# Use litellm's bundled model cost map; its background network fetch races with imports offline.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from typing import Dict, List, Optional, Union
from unittest.mock import AsyncMock, Mock

import pytest

from chatiq_kb.errors import FetchError
from chatiq_kb.search.types import CandidateRow, LanguageDetection, RetrievedChunk
from chatiq_kb.site_crawler.types import FetchResult


@pytest.fixture
async def mock_db_connection_pool():
    """Create a mock asyncpg connection pool for testing"""
    mock_conn = AsyncMock()
    mock_conn.fetchval = AsyncMock(return_value=True)  # Mock table existence check
    mock_conn.execute = AsyncMock()

    mock_pool = AsyncMock()
    mock_pool.fetch = AsyncMock(return_value=[])
    mock_pool.fetchval = AsyncMock(return_value=None)
    mock_pool.execute = AsyncMock()
    mock_pool.close = AsyncMock()
    mock_pool.acquire = Mock()
    # Make acquire() return the mock connection as a context manager
    mock_pool.acquire.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_pool.acquire.return_value.__aexit__ = AsyncMock(return_value=None)

    return mock_pool


class FakeFetcher:
    """In-memory stand-in for PageFetcher; unknown URLs answer 404."""

    def __init__(self, pages: Optional[Dict[str, Union[FetchResult, Exception]]] = None):
        self.pages = pages or {}
        self.calls: List[str] = []

    async def fetch(self, url: str, html_only: bool = True) -> FetchResult:
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchResult(url=url, status=404, content_type="text/html")
        if isinstance(page, Exception):
            raise page
        return page


def html(url: str, body: str, status: int = 200) -> FetchResult:
    return FetchResult(url=url, status=status, content_type="text/html; charset=utf-8", text=body)


def plain(url: str, body: str, content_type: str = "text/plain") -> FetchResult:
    return FetchResult(url=url, status=200, content_type=content_type, text=body)


def links_page(*hrefs: str, title: str = "") -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in hrefs)
    return f"<html><head><title>{title}</title></head><body>{anchors}</body></html>"


@pytest.fixture
def fake_site():
    """Build a FakeFetcher from {url: html body | FetchResult | Exception}."""

    def build(pages):
        resolved = {}
        for url, page in pages.items():
            resolved[url] = html(url, page) if isinstance(page, str) else page
        return FakeFetcher(resolved)

    return build


@pytest.fixture
def page_helpers():
    return {"html": html, "plain": plain, "links_page": links_page, "fetch_error": FetchError}


class FakeEmbedder:
    def __init__(self, vector=None, error: Optional[Exception] = None):
        self.vector = vector or [0.1] * 8
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.vector


class FakeVectorSearch:
    def __init__(self, rows: Optional[List[CandidateRow]] = None, error: Optional[Exception] = None):
        self.rows = rows or []
        self.error = error
        self.calls = []

    async def search(self, query_vector, team_id, bot_id, limit):
        self.calls.append((team_id, bot_id, limit))
        if self.error is not None:
            raise self.error
        return self.rows[:limit]


class FakeContextStore:
    def __init__(self, pinned: Optional[Dict[str, List[str]]] = None, fail_reads=False, fail_writes=False):
        self.pinned = pinned or {}
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.writes = []

    async def get_pinned(self, conversation_id):
        if self.fail_reads:
            raise ConnectionError("context store down")
        return list(self.pinned.get(conversation_id, []))

    async def set_pinned(self, conversation_id, chunk_ids):
        if self.fail_writes:
            raise ConnectionError("context store down")
        self.writes.append((conversation_id, list(chunk_ids)))
        self.pinned[conversation_id] = list(chunk_ids)


class FakeChunkLookup:
    def __init__(self, chunks: Optional[List[RetrievedChunk]] = None):
        self.by_id = {chunk.chunk_id: chunk for chunk in chunks or []}

    def add(self, chunks):
        for chunk in chunks:
            self.by_id[chunk.chunk_id] = chunk

    async def fetch_by_ids(self, chunk_ids):
        return [self.by_id[chunk_id] for chunk_id in chunk_ids if chunk_id in self.by_id]


class FixedLanguageDetector:
    def __init__(self, language=None, confidence=None):
        self.detection = LanguageDetection(language=language, confidence=confidence)

    def detect(self, text):
        return self.detection


def candidate(chunk_id, document_id, similarity, language=None, document_language=None, group=None, text=None):
    return CandidateRow(
        chunk_id=chunk_id,
        document_id=document_id,
        canonical_url=f"https://example.com/{document_id}",
        chunk_text=text or f"text of {chunk_id}",
        chunk_language=language,
        document_language=document_language,
        translation_group_id=group,
        similarity=similarity,
    )


def stored_chunk(chunk_id, document_id, content=None):
    return RetrievedChunk(
        chunk_id=chunk_id,
        document_id=document_id,
        canonical_url=f"https://example.com/{document_id}",
        content=content or f"text of {chunk_id}",
    )


@pytest.fixture
def retrieval_fakes():
    return {
        "embedder": FakeEmbedder,
        "vector_search": FakeVectorSearch,
        "context_store": FakeContextStore,
        "chunk_lookup": FakeChunkLookup,
        "detector": FixedLanguageDetector,
        "candidate": candidate,
        "stored_chunk": stored_chunk,
    }
