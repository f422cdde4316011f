import logging
import re
from typing import List, Sequence

from chatiq_kb.search.types import FullTextSearch, RetrievedChunk

logger = logging.getLogger(__name__)

DEFAULT_DETERMINISTIC_TOP_K = 6
DEFAULT_EXCERPT_CHARS = 350

COMMON_STOP_WORDS = {
    "the", "and", "are", "was", "were", "what", "when", "where", "which", "who", "why", "how",
    "with", "from", "that", "this", "these", "those", "your", "you", "our", "for", "but", "not",
    "have", "has", "had", "can", "will", "would", "should", "could", "just", "like", "than",
    "then", "into", "over", "also", "there", "their", "them", "about",
}


class DeterministicRetriever:
    """
    Full-text chunk lookup used when embedding-based retrieval is unavailable.

    No language reranking, pinning or dedup: the search backend's ranking is
    returned as-is, with its rank score in `similarity`.
    """

    def __init__(self, full_text_search: FullTextSearch):
        self.full_text_search = full_text_search

    async def retrieve(
        self, team_id: str, bot_id: str, query: str, top_k: int = DEFAULT_DETERMINISTIC_TOP_K
    ) -> List[RetrievedChunk]:
        trimmed_query = query.strip()
        if not trimmed_query:
            return []

        try:
            chunks = await self.full_text_search.search(trimmed_query, team_id, bot_id, top_k)
        except Exception as e:
            logger.error(f"Deterministic chunk search failed: {e}")
            return []

        return [chunk.model_copy(update={"source": "retrieved"}) for chunk in chunks[:top_k]]


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_query_terms(query: str) -> List[str]:
    cleaned = normalize_whitespace(re.sub(r"[^\w\s]", " ", query.lower()))
    if not cleaned:
        return []

    terms = []
    for term in cleaned.split(" "):
        if len(term) < 3 or term in COMMON_STOP_WORDS:
            continue
        # crude plural folding
        if len(term) > 4 and term.endswith("s"):
            term = term[:-1]
        terms.append(term)
    return terms


def extract_excerpt(content: str, query: str, max_chars: int = DEFAULT_EXCERPT_CHARS) -> str:
    """Cut a window of max_chars around the first query term found in content."""
    raw = content.strip()
    if not raw:
        return ""

    lower_content = raw.lower()
    best_index = -1
    for term in normalize_query_terms(query):
        best_index = lower_content.find(term)
        if best_index >= 0:
            break

    if best_index < 0:
        return raw[:max_chars].strip()

    start = max(0, best_index - max_chars // 4)
    end = min(len(raw), start + max_chars)
    excerpt = raw[start:end].strip()

    if start > 0:
        excerpt = f"...{excerpt}"
    if end < len(raw):
        excerpt = f"{excerpt}..."
    return excerpt


def build_deterministic_response(
    chunks: Sequence[RetrievedChunk],
    query: str,
    max_chars: int = DEFAULT_EXCERPT_CHARS,
    allow_read_more: bool = True,
) -> str:
    """
    Answer with an excerpt of the best matching chunk instead of a generated reply.

    The first chunk mentioning a query term wins, else the first chunk. A
    "Read more" link to the chunk's canonical URL is appended when allowed.
    """
    if not chunks:
        return ""

    terms = normalize_query_terms(query)
    primary = next(
        (chunk for chunk in chunks if any(term in normalize_whitespace(chunk.content).lower() for term in terms)),
        chunks[0],
    )

    excerpt = extract_excerpt(primary.content, query, max_chars)
    if not excerpt:
        return ""

    if not allow_read_more or not primary.canonical_url:
        return excerpt

    anchor = f"#{primary.anchor_id}" if primary.anchor_id else ""
    return f"{excerpt}\n\n[Read more]({primary.canonical_url}{anchor})"
