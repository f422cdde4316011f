"""
Semantic retrieval of bot knowledge chunks for a chat turn.

The Retriever embeds the query, pulls nearest-neighbour candidates for the
bot, boosts chunks written in the caller's preferred languages, keeps one
chunk per document and per translation group, and merges the result with
the chunks already pinned to the conversation so that follow-up turns keep
their context.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from chatiq_kb.errors import EmbeddingError
from chatiq_kb.search.language import ScriptLanguageDetector, normalize_language_tag
from chatiq_kb.search.types import (
    CandidateRow,
    ChunkLookup,
    ConversationContextStore,
    EmbeddingClient,
    LanguageDetection,
    LanguageDetector,
    RetrievedChunk,
    RetrieveResult,
    VectorSearch,
)

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 12
DEFAULT_PIN_LIMIT = 6
MAX_CANDIDATES = 200
LANGUAGE_BONUS = (0.02, 0.01)
MIN_QUERY_CONFIDENCE = 0.6
FALLBACK_LANGUAGE = "en"

DEFAULT_EMBEDDING_TIMEOUT_SECONDS = 20.0
DEFAULT_VECTOR_SEARCH_TIMEOUT_SECONDS = 10.0


@dataclass
class ScoredChunk:
    chunk: RetrievedChunk
    score: float
    language: Optional[str]


def effective_language(chunk: RetrievedChunk) -> Optional[str]:
    """The chunk's own language, falling back to its document's language."""
    return chunk.language or chunk.document_language


def resolve_preferred_languages(
    detection: LanguageDetection, preferred_languages: Optional[Iterable[str]] = None
) -> List[str]:
    normalized = [normalize_language_tag(lang) for lang in preferred_languages or []]
    normalized = [lang for lang in normalized if lang]

    if normalized:
        preferred = normalized
    elif detection.language and (detection.confidence or 0) >= MIN_QUERY_CONFIDENCE:
        preferred = [normalize_language_tag(detection.language), FALLBACK_LANGUAGE]
    else:
        preferred = [FALLBACK_LANGUAGE]

    return list(dict.fromkeys(preferred))


def candidate_limit(top_k: int) -> int:
    return min(max(top_k * 4, top_k), MAX_CANDIDATES)


def language_bonus(language: Optional[str], preferred: Sequence[str]) -> float:
    if not language:
        return 0.0
    for rank, bonus in enumerate(LANGUAGE_BONUS):
        if rank < len(preferred) and preferred[rank] == language:
            return bonus
    return 0.0


def candidate_to_chunk(row: CandidateRow) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=row.chunk_id,
        document_id=row.document_id,
        canonical_url=row.canonical_url,
        anchor_id=row.anchor_id,
        content=row.chunk_text,
        language=normalize_language_tag(row.chunk_language) if row.chunk_language else None,
        document_language=normalize_language_tag(row.document_language) if row.document_language else None,
        translation_group_id=row.translation_group_id,
        similarity=row.similarity,
        source="retrieved",
    )


def rank_candidates(chunks: Iterable[RetrievedChunk], preferred: Sequence[str]) -> List[ScoredChunk]:
    """Score by similarity plus language bonus, highest first; ties keep their input order."""
    scored = []
    for chunk in chunks:
        language = effective_language(chunk)
        scored.append(
            ScoredChunk(
                chunk=chunk,
                score=(chunk.similarity or 0.0) + language_bonus(language, preferred),
                language=language,
            )
        )
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored


def select_diverse(
    ranked: Iterable[RetrievedChunk], top_k: int, seen_documents: Optional[Set[str]] = None
) -> List[RetrievedChunk]:
    """
    Greedy selection with at most one chunk per document and per translation group.

    Chunks rejected by either constraint are kept aside; if the first pass
    comes up short, they backfill in their original order under the document
    constraint only.

    Args:
        ranked: Chunks in score order
        top_k: Maximum number of chunks to select
        seen_documents: Document ids that must not be selected again; updated in place

    Returns:
        Selected chunks in selection order
    """
    seen_documents = seen_documents if seen_documents is not None else set()
    seen_groups: Set[str] = set()
    selected: List[RetrievedChunk] = []
    overflow: List[RetrievedChunk] = []

    if top_k <= 0:
        return selected

    for chunk in ranked:
        group = chunk.translation_group_id
        if chunk.document_id in seen_documents or (group is not None and group in seen_groups):
            overflow.append(chunk)
            continue
        selected.append(chunk)
        seen_documents.add(chunk.document_id)
        if group is not None:
            seen_groups.add(group)
        if len(selected) >= top_k:
            return selected

    for chunk in overflow:
        if len(selected) >= top_k:
            break
        if chunk.document_id in seen_documents:
            continue
        selected.append(chunk)
        seen_documents.add(chunk.document_id)

    return selected


def merge_pinned_ids(existing: Sequence[str], selected: Sequence[str], pin_limit: int) -> List[str]:
    """Existing pins first, then new ids in selection order, deduplicated and truncated."""
    merged = list(dict.fromkeys([*existing, *selected]))
    return merged[: max(pin_limit, 0)]


class Retriever:
    """
    Per-turn semantic retrieval for a bot.

    Example:
        >>> retriever = Retriever(embedder, PgVectorSearch(pool), PgConversationStore(pool), PgChunkLookup(pool))
        >>> result = await retriever.retrieve(team_id, bot_id, "How do I reset my password?", conversation_id=cid)
        >>> [chunk.chunk_id for chunk in result.chunks]
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        vector_search: VectorSearch,
        context_store: Optional[ConversationContextStore] = None,
        chunk_lookup: Optional[ChunkLookup] = None,
        language_detector: Optional[LanguageDetector] = None,
        embedding_timeout: Optional[float] = None,
        search_timeout: Optional[float] = None,
    ):
        self.embedder = embedder
        self.vector_search = vector_search
        self.context_store = context_store
        self.chunk_lookup = chunk_lookup
        self.language_detector = language_detector or ScriptLanguageDetector()
        if embedding_timeout is None:
            embedding_timeout = float(os.getenv("EMBEDDING_TIMEOUT_SECONDS", str(DEFAULT_EMBEDDING_TIMEOUT_SECONDS)))
        if search_timeout is None:
            search_timeout = float(os.getenv("VECTOR_SEARCH_TIMEOUT_SECONDS", str(DEFAULT_VECTOR_SEARCH_TIMEOUT_SECONDS)))
        self.embedding_timeout = embedding_timeout
        self.search_timeout = search_timeout

    async def _load_pinned_ids(self, conversation_id: Optional[str]) -> List[str]:
        if not conversation_id or self.context_store is None:
            return []
        try:
            return list(await self.context_store.get_pinned(conversation_id))
        except Exception as e:
            logger.error(f"Failed to fetch conversation context for {conversation_id}: {e}")
            return []

    async def _save_pinned_ids(self, conversation_id: str, chunk_ids: List[str]):
        if self.context_store is None:
            return
        try:
            await self.context_store.set_pinned(conversation_id, chunk_ids)
        except Exception as e:
            logger.error(f"Failed to update pinned chunk ids for {conversation_id}: {e}")

    async def _fetch_pinned_chunks(self, chunk_ids: List[str]) -> List[RetrievedChunk]:
        if not chunk_ids or self.chunk_lookup is None:
            return []
        try:
            chunks = await self.chunk_lookup.fetch_by_ids(chunk_ids)
        except Exception as e:
            logger.error(f"Failed to fetch pinned chunks: {e}")
            return []
        return [chunk.model_copy(update={"source": "pinned", "similarity": None}) for chunk in chunks]

    async def _embed(self, query: str) -> List[float]:
        try:
            return await asyncio.wait_for(self.embedder.embed(query), timeout=self.embedding_timeout)
        except asyncio.TimeoutError:
            raise EmbeddingError(f"Embedding request timed out after {self.embedding_timeout}s")
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

    async def retrieve(
        self,
        team_id: str,
        bot_id: str,
        query: str,
        conversation_id: Optional[str] = None,
        preferred_languages: Optional[List[str]] = None,
        top_k: int = DEFAULT_TOP_K,
        pin_limit: int = DEFAULT_PIN_LIMIT,
    ) -> RetrieveResult:
        """
        Retrieve the chunks that should ground the answer to a query.

        Args:
            team_id: Tenant owning the bot
            bot_id: Bot whose knowledge is searched
            query: The user's message
            conversation_id: Conversation whose pinned context is read and updated
            preferred_languages: Language tags to favour; detected from the query when omitted
            top_k: Maximum number of fresh chunks
            pin_limit: Maximum number of pinned chunk ids kept on the conversation

        Returns:
            RetrieveResult with pinned chunks first, then fresh chunks in score order

        Raises:
            EmbeddingError: the query could not be embedded
        """
        trimmed_query = query.strip()
        if not trimmed_query:
            return RetrieveResult()

        existing_pinned_ids = await self._load_pinned_ids(conversation_id)

        detection = self.language_detector.detect(trimmed_query)
        preferred = resolve_preferred_languages(detection, preferred_languages)
        logger.info(
            f"Query language: detected={detection.language} "
            f"confidence={detection.confidence} preferred={preferred}"
        )

        query_vector = await self._embed(trimmed_query)

        limit = candidate_limit(top_k)
        try:
            candidates = await asyncio.wait_for(
                self.vector_search.search(query_vector, team_id, bot_id, limit),
                timeout=self.search_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Vector search timed out after {self.search_timeout}s, using pinned context only")
            return await self._pinned_only(existing_pinned_ids)
        except Exception as e:
            logger.error(f"Vector search failed, using pinned context only: {e}")
            return await self._pinned_only(existing_pinned_ids)

        pinned_chunks = await self._fetch_pinned_chunks(existing_pinned_ids)
        # pinned documents are already in context
        seen_documents = {chunk.document_id for chunk in pinned_chunks}

        ranked = rank_candidates((candidate_to_chunk(row) for row in candidates), preferred)
        selected = select_diverse((item.chunk for item in ranked), top_k, seen_documents)

        retrieved_languages = [effective_language(chunk) or "unknown" for chunk in selected]
        fallback_used = bool(preferred) and not any(effective_language(chunk) == preferred[0] for chunk in selected)
        logger.info(
            f"Retrieved {len(selected)} of {len(candidates)} candidates "
            f"(pinned={len(pinned_chunks)}): languages={retrieved_languages} fallback_used={fallback_used}"
        )

        next_pinned_ids = []
        if conversation_id:
            next_pinned_ids = merge_pinned_ids(
                existing_pinned_ids, [chunk.chunk_id for chunk in selected], pin_limit
            )
            await self._save_pinned_ids(conversation_id, next_pinned_ids)

        return RetrieveResult(chunks=[*pinned_chunks, *selected], pinned_chunk_ids=next_pinned_ids)

    async def _pinned_only(self, pinned_ids: List[str]) -> RetrieveResult:
        return RetrieveResult(chunks=await self._fetch_pinned_chunks(pinned_ids), pinned_chunk_ids=list(pinned_ids))
