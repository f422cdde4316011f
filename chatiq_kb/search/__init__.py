from chatiq_kb.search.deterministic import DeterministicRetriever
from chatiq_kb.search.retrieval import Retriever
from chatiq_kb.search.types import RetrievedChunk, RetrieveResult

__all__ = ["DeterministicRetriever", "RetrievedChunk", "RetrieveResult", "Retriever"]
