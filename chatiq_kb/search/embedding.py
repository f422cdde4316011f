import hashlib
import json
import logging
import os
from typing import List, Optional

from litellm import aembedding

from chatiq_kb.errors import EmbeddingError

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


class LiteLLMEmbeddingClient:
    """
    Query embeddings through litellm, with an optional on-disk cache.

    Failures raise EmbeddingError: an unembeddable query cannot be retrieved
    against, so there is no zero-vector fallback.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        cache_enabled: bool = False,
        cache_dir: str = ".embedding_cache",
    ):
        self.model = model or os.getenv("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.cache_enabled = cache_enabled
        self.cache_dir = cache_dir

    def _cache_file(self, text: str) -> str:
        return os.path.join(self.cache_dir, hashlib.sha256(f"{self.model}:{text}".encode()).hexdigest() + ".json")

    def _read_cache(self, text: str) -> Optional[List[float]]:
        cache_file = self._cache_file(text)
        if not os.path.exists(cache_file):
            return None
        try:
            with open(cache_file) as f:
                embedding = json.load(f)
            logger.info("Embedding cache HIT")
            return embedding
        except (OSError, ValueError) as e:
            logger.warning(f"Cache read error for embedding: {e}")
            return None

    def _write_cache(self, text: str, embedding: List[float]):
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            with open(self._cache_file(text), "w") as f:
                json.dump(embedding, f)
        except OSError as e:
            logger.warning(f"Cache write error for embedding: {e}")

    async def embed(self, text: str) -> List[float]:
        if self.cache_enabled:
            cached = self._read_cache(text)
            if cached is not None:
                return cached

        try:
            response = await aembedding(model=self.model, input=text)
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        try:
            embedding = list(response.data[0]["embedding"])
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise EmbeddingError("Embedding response missing vector data.") from e

        hidden_params = getattr(response, "_hidden_params", None)
        cost = hidden_params.get("response_cost") if isinstance(hidden_params, dict) else None
        usage = getattr(response, "usage", None)
        logger.info(f"Embedding Generation - Tokens: {getattr(usage, 'total_tokens', 0)}, Cost: ${cost or 0:.6f}")

        if self.cache_enabled:
            self._write_cache(text, embedding)
        return embedding
