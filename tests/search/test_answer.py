from unittest.mock import AsyncMock, Mock, patch

import pytest

from chatiq_kb.errors import EmbeddingError
from chatiq_kb.search.answer import NO_ANSWER, GroundedAnswer, add_retrieved_knowledge, answer_question
from chatiq_kb.search.types import AnswerDeps, RetrievedChunk, RetrieveResult

CHUNK = RetrievedChunk(
    chunk_id="c1",
    document_id="doc-1",
    canonical_url="https://example.com/help",
    anchor_id="reset",
    content="To reset your password open settings.",
)


def retriever_returning(chunks=None, error=None):
    retriever = Mock()
    if error is not None:
        retriever.retrieve = AsyncMock(side_effect=error)
    else:
        retriever.retrieve = AsyncMock(return_value=RetrieveResult(chunks=chunks or []))
    return retriever


def deterministic_returning(chunks):
    retriever = Mock()
    retriever.retrieve = AsyncMock(return_value=chunks)
    return retriever


@pytest.mark.asyncio
async def test_answer_from_llm():
    run_result = Mock(output=GroundedAnswer(content="Open settings.", reference_urls=["https://example.com/help"]))
    with patch("chatiq_kb.search.answer.answer_agent.run", new_callable=AsyncMock, return_value=run_result) as mock_run:
        answer = await answer_question(
            "How do I reset my password?",
            "team",
            "bot",
            retriever=retriever_returning([CHUNK]),
            conversation_id="conv-1",
            model="test",
        )

    assert answer.source == "llm"
    assert answer.content == "Open settings."
    assert answer.reference_urls == ["https://example.com/help"]
    deps = mock_run.call_args.kwargs["deps"]
    assert deps.chunks == [CHUNK]
    assert mock_run.call_args.kwargs["model"] == "test"


@pytest.mark.asyncio
async def test_llm_failure_falls_back_to_deterministic():
    with patch("chatiq_kb.search.answer.answer_agent.run", new_callable=AsyncMock, side_effect=RuntimeError("boom")):
        answer = await answer_question(
            "reset password",
            "team",
            "bot",
            retriever=retriever_returning([CHUNK]),
            deterministic_retriever=deterministic_returning([CHUNK]),
        )

    assert answer.source == "deterministic"
    assert answer.content.startswith("To reset your password open settings.")
    assert "[Read more](https://example.com/help#reset)" in answer.content
    assert answer.reference_urls == ["https://example.com/help"]


@pytest.mark.asyncio
async def test_embedding_failure_falls_back_to_deterministic():
    with patch("chatiq_kb.search.answer.answer_agent.run", new_callable=AsyncMock) as mock_run:
        answer = await answer_question(
            "reset password",
            "team",
            "bot",
            retriever=retriever_returning(error=EmbeddingError("provider down")),
            deterministic_retriever=deterministic_returning([CHUNK]),
        )

    mock_run.assert_not_called()
    assert answer.source == "deterministic"


@pytest.mark.asyncio
async def test_nothing_found():
    answer = await answer_question(
        "reset password",
        "team",
        "bot",
        retriever=retriever_returning([]),
        deterministic_retriever=deterministic_returning([]),
    )
    assert answer.content == NO_ANSWER
    assert answer.source == "none"
    assert answer.reference_urls == []


@pytest.mark.asyncio
async def test_retrieved_knowledge_prompt():
    context = Mock(deps=AnswerDeps(team_id="team", bot_id="bot", chunks=[CHUNK]))
    prompt = await add_retrieved_knowledge(context)
    assert "[https://example.com/help#reset]" in prompt
    assert "To reset your password open settings." in prompt
