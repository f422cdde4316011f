import logging
import os
from typing import List, Optional

from pydantic import BaseModel
from pydantic_ai import Agent, RunContext

from chatiq_kb.errors import EmbeddingError
from chatiq_kb.search.deterministic import DeterministicRetriever, build_deterministic_response
from chatiq_kb.search.retrieval import Retriever
from chatiq_kb.search.types import Answer, AnswerDeps

logger = logging.getLogger(__name__)

DEFAULT_LLM_MODEL = "openai:gpt-4o-mini"
NO_ANSWER = "I couldn't find any relevant information."


class GroundedAnswer(BaseModel):
    content: str
    reference_urls: List[str]


# the model is chosen per run so importing this module needs no API key
answer_agent = Agent(
    output_type=GroundedAnswer,
    deps_type=AnswerDeps,
    system_prompt="""
        You are a helpful assistant answering questions about a business's own content.
        Answer only from the knowledge provided below. If it does not contain the answer, say so honestly.
        Put the source URLs you relied on in reference_urls.
    """,
)


@answer_agent.system_prompt
async def add_retrieved_knowledge(context: RunContext[AnswerDeps]) -> str:
    """Add the retrieved chunks to the context."""
    sections = []
    for chunk in context.deps.chunks:
        source = chunk.canonical_url or "unknown source"
        if chunk.canonical_url and chunk.anchor_id:
            source = f"{chunk.canonical_url}#{chunk.anchor_id}"
        sections.append(f"[{source}]\n{chunk.content}")
    return "Knowledge:\n\n" + "\n\n---\n\n".join(sections)


async def answer_question(
    question: str,
    team_id: str,
    bot_id: str,
    retriever: Retriever,
    deterministic_retriever: Optional[DeterministicRetriever] = None,
    conversation_id: Optional[str] = None,
    model: Optional[str] = None,
) -> Answer:
    """
    Answer a chat message from the bot's knowledge.

    Semantic retrieval feeds the answer agent; when retrieval finds nothing or
    either step fails, the deterministic retriever's best excerpt is returned
    instead.
    """
    chunks = []
    try:
        retrieval = await retriever.retrieve(team_id, bot_id, question, conversation_id=conversation_id)
        chunks = retrieval.chunks
    except EmbeddingError as e:
        logger.error(f"Semantic retrieval unavailable: {e}")

    if chunks:
        logger.info(f"Answering from {len(chunks)} chunks")
        try:
            run_result = await answer_agent.run(
                question,
                deps=AnswerDeps(team_id=team_id, bot_id=bot_id, chunks=chunks),
                model=model or os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL),
            )
            output = run_result.output
            return Answer(content=output.content, reference_urls=output.reference_urls, source="llm")
        except Exception as e:
            logger.error(f"Answer generation failed, falling back to deterministic answer: {e}")
    else:
        logger.warning(f"No chunks retrieved for bot {bot_id}")

    if deterministic_retriever is not None:
        fallback_chunks = await deterministic_retriever.retrieve(team_id, bot_id, question)
        response = build_deterministic_response(fallback_chunks, question)
        if response:
            urls = [
                chunk.canonical_url
                for chunk in fallback_chunks
                if chunk.canonical_url and chunk.canonical_url in response
            ]
            return Answer(content=response, reference_urls=urls, source="deterministic")

    return Answer(content=NO_ANSWER, reference_urls=[], source="none")
