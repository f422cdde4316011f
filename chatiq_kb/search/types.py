from dataclasses import dataclass
from typing import List, Literal, Optional, Protocol, Sequence

from pydantic import BaseModel


class LanguageDetection(BaseModel):
    language: Optional[str] = None
    confidence: Optional[float] = None


class CandidateRow(BaseModel):
    """One nearest-neighbour hit returned by the vector index."""

    chunk_id: str
    document_id: str
    canonical_url: Optional[str] = None
    anchor_id: Optional[str] = None
    chunk_text: str = ""
    chunk_language: Optional[str] = None
    document_language: Optional[str] = None
    translation_group_id: Optional[str] = None
    similarity: Optional[float] = None


class RetrievedChunk(BaseModel):
    chunk_id: str
    document_id: str
    canonical_url: Optional[str] = None
    anchor_id: Optional[str] = None
    content: str = ""
    language: Optional[str] = None
    document_language: Optional[str] = None
    translation_group_id: Optional[str] = None
    # None for pinned chunks that were not re-scored
    similarity: Optional[float] = None
    source: Literal["pinned", "retrieved"] = "retrieved"


class RetrieveResult(BaseModel):
    chunks: List[RetrievedChunk] = []
    pinned_chunk_ids: List[str] = []


class Answer(BaseModel):
    content: str
    reference_urls: List[str] = []
    source: Literal["llm", "deterministic", "none"] = "llm"


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class VectorSearch(Protocol):
    async def search(
        self, query_vector: Sequence[float], team_id: str, bot_id: str, limit: int
    ) -> List[CandidateRow]: ...


class FullTextSearch(Protocol):
    async def search(self, query: str, team_id: str, bot_id: str, limit: int) -> List[RetrievedChunk]: ...


class LanguageDetector(Protocol):
    def detect(self, text: str) -> LanguageDetection: ...


class ConversationContextStore(Protocol):
    async def get_pinned(self, conversation_id: str) -> List[str]: ...

    async def set_pinned(self, conversation_id: str, chunk_ids: List[str]) -> None: ...


class ChunkLookup(Protocol):
    async def fetch_by_ids(self, chunk_ids: List[str]) -> List[RetrievedChunk]: ...


@dataclass
class AnswerDeps:
    team_id: str
    bot_id: str
    chunks: List[RetrievedChunk]
