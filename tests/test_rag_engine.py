"""
Tests for the RAG query engine.
"""

import logging

import httpx
import openai
import pytest
import redis

from src.core.exceptions import DocumentDataError, RetrievalUnavailableError, TransientServiceError
from src.core.query.prompts import FALLBACK_PREFIX, build_rag_prompt
from src.core.vectorstore import ScoredChunk
from src.models.enums import FallbackReason, MessageRole

from conftest import chat_response, topic_vector
from test_vectorstore import make_chunks

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

PASSAGES = [
    "The basic warranty lasts four years or 50,000 miles, whichever comes first.",
    "The battery warranty covers eight years.",
    "Brake pads should be inspected every 10,000 miles.",
]


@pytest.fixture
def indexed(services):
    """Index three passages for agent-1 of tenant-1."""
    services.vector_store.upsert_chunks(
        tenant_id="tenant-1",
        agent_id="agent-1",
        file_id="file-1",
        chunks=make_chunks(PASSAGES),
        vectors=[topic_vector(text) for text in PASSAGES],
        file_name="manual.pdf",
    )
    return services


def scored(index, content, score=0.9):
    return ScoredChunk(id=f"point-{index}", score=score, payload={
        "file_id": "file-1", "file_name": "manual.pdf", "chunk_index": index, "content": content,
    })


def test_answer_uses_retrieved_passages(indexed, openai_client):
    openai_client.chat.completions.create.return_value = chat_response("Four years [Source 1].", tokens=55)

    response = indexed.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1",
                                                 user_id="user-1")

    assert response.answer == "Four years [Source 1]."
    assert response.tokens_used == 55
    assert response.rag_metadata.search_performed
    assert not response.rag_metadata.fallback_used
    assert response.rag_metadata.chunks_found == 2
    assert response.rag_metadata.search_score == response.referenced_chunks[0].score
    assert {chunk.chunk_index for chunk in response.referenced_chunks} == {0, 1}

    system_prompt = openai_client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
    assert "[Source 1] (manual.pdf)" in system_prompt
    assert PASSAGES[0] in system_prompt
    assert PASSAGES[2] not in system_prompt


def test_exchange_is_persisted(indexed):
    response = indexed.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1")

    session = indexed.chat_repository.get_session(response.session_id)
    assert session.total_messages == 2
    assert session.total_tokens == response.tokens_used
    messages = indexed.chat_repository.get_messages(response.session_id)
    assert [message.role for message in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].message_id == response.message_id
    assert messages[1].rag_metadata.chunks_found == 2

    # The same session keeps growing
    follow_up = indexed.query_engine.answer_query("agent-1", "And the battery?", "tenant-1",
                                                  session_id=response.session_id)
    assert follow_up.session_id == response.session_id
    assert indexed.chat_repository.get_session(response.session_id).total_messages == 4


def test_no_relevant_passages_falls_back(indexed, openai_client):
    openai_client.chat.completions.create.return_value = chat_response("Blue is popular.")

    response = indexed.query_engine.answer_query("agent-1", "What is your favourite colour?", "tenant-1")

    assert response.answer == FALLBACK_PREFIX + "Blue is popular."
    assert response.rag_metadata.fallback_used
    assert response.rag_metadata.fallback_reason == FallbackReason.NO_RESULTS
    assert response.rag_metadata.chunks_found == 0
    assert response.referenced_chunks == []


def test_other_agents_documents_are_not_used(indexed):
    response = indexed.query_engine.answer_query("agent-2", "How long is the warranty?", "tenant-1")

    assert response.rag_metadata.fallback_used
    assert response.rag_metadata.chunks_found == 0


def test_embedding_failure_is_fatal(services, fake_embeddings, openai_client):
    fake_embeddings.error = openai.APIConnectionError(request=REQUEST)

    with pytest.raises(RetrievalUnavailableError):
        services.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1")

    openai_client.chat.completions.create.assert_not_called()


def test_empty_message_is_rejected(services):
    with pytest.raises(DocumentDataError):
        services.query_engine.answer_query("agent-1", "   ", "tenant-1")


def test_retrieval_failure_degrades_to_general_answer(indexed, monkeypatch):
    def failing_query(*args, **kwargs):
        raise TransientServiceError("qdrant down", service="qdrant")

    monkeypatch.setattr(indexed.vector_store, "query", failing_query)

    response = indexed.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1")

    assert response.answer.startswith(FALLBACK_PREFIX)
    assert not response.rag_metadata.search_performed
    assert response.rag_metadata.fallback_reason == FallbackReason.RETRIEVAL_ERROR


def test_completion_failure_returns_apology(indexed, openai_client):
    openai_client.chat.completions.create.side_effect = openai.InternalServerError(
        "overloaded", response=httpx.Response(503, request=REQUEST), body=None,
    )

    response = indexed.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1")

    assert "technical difficulties" in response.answer
    assert "How long is the warranty?" in response.answer
    assert response.rag_metadata.fallback_used
    assert response.rag_metadata.fallback_reason == FallbackReason.COMPLETION_ERROR
    assert response.tokens_used == 0


def test_persistence_failure_is_logged_not_raised(indexed, monkeypatch, caplog):
    def failing_append(*args, **kwargs):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(indexed.chat_repository, "append_exchange", failing_append)

    with caplog.at_level(logging.ERROR):
        response = indexed.query_engine.answer_query("agent-1", "How long is the warranty?", "tenant-1")

    assert response.answer == "Generated answer"
    assert response.message_id is None
    assert "Failed to store chat messages" in caplog.text


def test_limit_is_capped(indexed, monkeypatch):
    limits = []
    original_query = indexed.vector_store.query

    def recording_query(tenant_id, agent_id, vector, limit=5, score_threshold=None):
        limits.append((limit, score_threshold))
        return original_query(tenant_id, agent_id, vector, limit=limit, score_threshold=score_threshold)

    monkeypatch.setattr(indexed.vector_store, "query", recording_query)

    indexed.query_engine.answer_query("agent-1", "warranty?", "tenant-1", limit=500, score_threshold=0.2)
    indexed.query_engine.answer_query("agent-1", "warranty?", "tenant-1")

    assert limits == [(20, 0.2), (5, 0.6)]


def test_context_budget_truncates_passages(services):
    engine = services.query_engine
    engine.max_context_chars = 500

    passages, referenced = engine.build_context([scored(0, "a" * 300), scored(1, "b" * 300), scored(2, "c" * 50)])

    assert [number for number, _, _ in passages] == [1, 2]
    assert len(passages[1][1]) == 200
    assert [chunk.truncated_in_context for chunk in referenced] == [False, True, True]
    assert len(referenced) == 3


def test_too_small_remainder_is_omitted(services):
    engine = services.query_engine
    engine.max_context_chars = 300

    passages, referenced = engine.build_context([scored(0, "a" * 250), scored(1, "b" * 250)])

    assert len(passages) == 1
    assert referenced[1].truncated_in_context
    assert referenced[0].content == "a" * 200 + "..."


def test_rag_prompt_numbers_sources_in_rank_order():
    prompt = build_rag_prompt([(1, "first passage", "a.pdf"), (2, "second passage", "")])

    assert prompt.index("[Source 1] (a.pdf)\nfirst passage") < prompt.index("[Source 2]\nsecond passage")
