import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

import asyncpg
import pydantic_core
from asyncpg import create_pool

from chatiq_kb.search.language import normalize_language_tag
from chatiq_kb.search.types import CandidateRow, RetrievedChunk

logger = logging.getLogger(__name__)

CHUNK_COLUMNS = """
    c.id::text AS chunk_id,
    c.document_id::text AS document_id,
    d.canonical_url,
    c.anchor_id,
    c.text AS chunk_text,
    c.language AS chunk_language,
    d.language AS document_language,
    d.translation_group_id::text AS translation_group_id
"""


async def ensure_db_initialized(connection: asyncpg.Connection):
    """Ensure database is initialized with required tables and functions"""
    init_sql_path = Path(__file__).parent / "init_db.sql"
    await connection.execute(init_sql_path.read_text())


async def create_connection_pool() -> asyncpg.Pool:
    pool = await create_pool(
        user=os.environ["POSTGRES_USER"],
        password=os.environ["POSTGRES_PASSWORD"],
        database=os.environ["POSTGRES_DB"],
        host=os.environ["POSTGRES_HOST"],
        port=int(os.environ["POSTGRES_PORT"]),
        min_size=int(os.getenv("POSTGRES_POOL_MIN_SIZE", "1")),
        max_size=int(os.getenv("POSTGRES_POOL_MAX_SIZE", "10")),
    )

    async with pool.acquire() as connection:
        # Check if table exists before initializing
        table_exists = await connection.fetchval(
            """
            SELECT EXISTS (
                SELECT FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_name = 'bot_doc_chunks'
            );
            """
        )

        if not table_exists:
            try:
                await ensure_db_initialized(connection)
            except Exception as e:
                logger.error(f"Error initializing database: {e}")
                raise

    return pool


def _language(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return normalize_language_tag(value)
    return None


def _text_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def row_to_candidate(row) -> CandidateRow:
    similarity = row["similarity"]
    return CandidateRow(
        chunk_id=str(row["chunk_id"]),
        document_id=str(row["document_id"]),
        canonical_url=row["canonical_url"],
        anchor_id=row["anchor_id"],
        chunk_text=row["chunk_text"] or "",
        chunk_language=_language(row["chunk_language"]),
        document_language=_language(row["document_language"]),
        translation_group_id=_text_or_none(row["translation_group_id"]),
        similarity=float(similarity) if similarity is not None else None,
    )


def row_to_chunk(row, source: str = "retrieved", similarity: Optional[float] = None) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=str(row["chunk_id"]),
        document_id=str(row["document_id"]),
        canonical_url=row["canonical_url"],
        anchor_id=row["anchor_id"],
        content=row["chunk_text"] or "",
        language=_language(row["chunk_language"]),
        document_language=_language(row["document_language"]),
        translation_group_id=_text_or_none(row["translation_group_id"]),
        similarity=similarity,
        source=source,
    )


class PgVectorSearch:
    """Nearest-neighbour chunk search through the match_bot_embeddings function."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def search(
        self, query_vector: Sequence[float], team_id: str, bot_id: str, limit: int
    ) -> List[CandidateRow]:
        embedding_json = pydantic_core.to_json(list(query_vector)).decode()
        rows = await self.pool.fetch(
            """
            SELECT chunk_id, document_id, canonical_url, anchor_id, chunk_text,
                   chunk_language, document_language, translation_group_id, similarity
            FROM match_bot_embeddings($1, $2, $3, $4)
            """,
            embedding_json,
            team_id,
            bot_id,
            limit,
        )
        return [row_to_candidate(row) for row in rows]


class PgFullTextSearch:
    """Lexical chunk search through the match_bot_chunks_deterministic function."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def search(self, query: str, team_id: str, bot_id: str, limit: int) -> List[RetrievedChunk]:
        rows = await self.pool.fetch(
            """
            SELECT chunk_id, document_id, canonical_url, anchor_id, chunk_text,
                   chunk_language, document_language, translation_group_id, rank
            FROM match_bot_chunks_deterministic($1, $2, $3, $4)
            """,
            query,
            team_id,
            bot_id,
            limit,
        )
        return [
            row_to_chunk(row, similarity=float(row["rank"]) if row["rank"] is not None else None) for row in rows
        ]


class PgChunkLookup:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def fetch_by_ids(self, chunk_ids: List[str]) -> List[RetrievedChunk]:
        """Materialize chunk ids in the given order; ids that no longer exist are dropped."""
        if not chunk_ids:
            return []

        rows = await self.pool.fetch(
            f"""
            SELECT {CHUNK_COLUMNS}
            FROM bot_doc_chunks c
            JOIN bot_documents d ON d.id = c.document_id
            WHERE c.id::text = ANY($1::text[])
            """,
            list(chunk_ids),
        )
        by_id = {str(row["chunk_id"]): row_to_chunk(row, source="pinned") for row in rows}
        return [by_id[chunk_id] for chunk_id in chunk_ids if chunk_id in by_id]


class PgConversationStore:
    """Pinned chunk ids kept in bot_conversations.context_chunk_ids."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_pinned(self, conversation_id: str) -> List[str]:
        value = await self.pool.fetchval(
            "SELECT context_chunk_ids FROM bot_conversations WHERE id::text = $1",
            conversation_id,
        )
        if value is None:
            return []
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, list):
            logger.warning(f"Ignoring malformed context_chunk_ids for conversation {conversation_id}")
            return []
        return [item for item in value if isinstance(item, str)]

    async def set_pinned(self, conversation_id: str, chunk_ids: List[str]) -> None:
        await self.pool.execute(
            """
            UPDATE bot_conversations
            SET context_chunk_ids = $2::jsonb,
                updated_at = timezone('utc'::text, now())
            WHERE id::text = $1
            """,
            conversation_id,
            json.dumps(chunk_ids),
        )
