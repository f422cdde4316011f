import json
from unittest.mock import AsyncMock, Mock, patch

import pytest

from chatiq_kb.search.store import (
    PgChunkLookup,
    PgConversationStore,
    PgFullTextSearch,
    PgVectorSearch,
    create_connection_pool,
)


def db_row(chunk_id, document_id="doc-1", **extra):
    row = {
        "chunk_id": chunk_id,
        "document_id": document_id,
        "canonical_url": f"https://example.com/{document_id}",
        "anchor_id": None,
        "chunk_text": f"text of {chunk_id}",
        "chunk_language": "EN-us",
        "document_language": "en",
        "translation_group_id": None,
    }
    row.update(extra)
    return row


@pytest.mark.asyncio
async def test_vector_search_passes_embedding_as_json(mock_db_connection_pool):
    mock_db_connection_pool.fetch.return_value = [db_row("c1", similarity=0.83, translation_group_id="g1")]

    rows = await PgVectorSearch(mock_db_connection_pool).search([0.5, 0.25], "team", "bot", 48)

    args = mock_db_connection_pool.fetch.call_args.args
    assert "match_bot_embeddings" in args[0]
    assert args[1:] == ("[0.5,0.25]", "team", "bot", 48)
    assert len(rows) == 1
    assert rows[0].chunk_id == "c1"
    assert rows[0].similarity == 0.83
    assert rows[0].chunk_language == "en-US"
    assert rows[0].translation_group_id == "g1"


@pytest.mark.asyncio
async def test_full_text_search_maps_rank_to_similarity(mock_db_connection_pool):
    mock_db_connection_pool.fetch.return_value = [db_row("c1", rank=0.4), db_row("c2", rank=None)]

    chunks = await PgFullTextSearch(mock_db_connection_pool).search("password", "team", "bot", 6)

    assert "match_bot_chunks_deterministic" in mock_db_connection_pool.fetch.call_args.args[0]
    assert [(c.chunk_id, c.similarity) for c in chunks] == [("c1", 0.4), ("c2", None)]
    assert chunks[0].content == "text of c1"


@pytest.mark.asyncio
async def test_chunk_lookup_keeps_requested_order(mock_db_connection_pool):
    mock_db_connection_pool.fetch.return_value = [db_row("c2"), db_row("c1")]

    chunks = await PgChunkLookup(mock_db_connection_pool).fetch_by_ids(["c1", "missing", "c2"])

    assert [c.chunk_id for c in chunks] == ["c1", "c2"]
    assert all(c.source == "pinned" for c in chunks)
    assert mock_db_connection_pool.fetch.call_args.args[1] == ["c1", "missing", "c2"]


@pytest.mark.asyncio
async def test_chunk_lookup_without_ids(mock_db_connection_pool):
    assert await PgChunkLookup(mock_db_connection_pool).fetch_by_ids([]) == []
    mock_db_connection_pool.fetch.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "stored,expected",
    [
        (None, []),
        ('["c1", "c2"]', ["c1", "c2"]),
        (["c1", 3, "c2"], ["c1", "c2"]),
        ('{"not": "a list"}', []),
    ],
)
async def test_conversation_store_get_pinned(mock_db_connection_pool, stored, expected):
    mock_db_connection_pool.fetchval.return_value = stored
    assert await PgConversationStore(mock_db_connection_pool).get_pinned("conv-1") == expected


@pytest.mark.asyncio
async def test_conversation_store_set_pinned(mock_db_connection_pool):
    await PgConversationStore(mock_db_connection_pool).set_pinned("conv-1", ["c1", "c2"])

    args = mock_db_connection_pool.execute.call_args.args
    assert "UPDATE bot_conversations" in args[0]
    assert args[1] == "conv-1"
    assert json.loads(args[2]) == ["c1", "c2"]


@pytest.mark.asyncio
async def test_create_connection_pool_initializes_missing_schema(mock_db_connection_pool, monkeypatch):
    for name, value in {
        "POSTGRES_USER": "user",
        "POSTGRES_PASSWORD": "secret",
        "POSTGRES_DB": "chatiq",
        "POSTGRES_HOST": "localhost",
        "POSTGRES_PORT": "5432",
    }.items():
        monkeypatch.setenv(name, value)

    mock_conn = await mock_db_connection_pool.acquire.return_value.__aenter__()
    mock_conn.fetchval.return_value = False

    with patch(
        "chatiq_kb.search.store.create_pool", new_callable=AsyncMock, return_value=mock_db_connection_pool
    ) as mock_create_pool:
        pool = await create_connection_pool()

    assert pool is mock_db_connection_pool
    assert mock_create_pool.call_args.kwargs["port"] == 5432
    executed_sql = mock_conn.execute.call_args.args[0]
    assert "CREATE TABLE IF NOT EXISTS bot_doc_chunks" in executed_sql


@pytest.mark.asyncio
async def test_create_connection_pool_skips_existing_schema(mock_db_connection_pool, monkeypatch):
    for name in ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DB", "POSTGRES_HOST"):
        monkeypatch.setenv(name, "x")
    monkeypatch.setenv("POSTGRES_PORT", "5432")

    with patch("chatiq_kb.search.store.create_pool", new_callable=AsyncMock, return_value=mock_db_connection_pool):
        await create_connection_pool()

    mock_conn = await mock_db_connection_pool.acquire.return_value.__aenter__()
    mock_conn.execute.assert_not_called()
