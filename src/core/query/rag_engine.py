"""
RAG query engine.

Answers a chat question from the agent's indexed documents, degrading to a
general answer (clearly marked) when nothing relevant is found.
"""

import time
import uuid
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

from src.core.exceptions import DocumentDataError, PipelineError, RetrievalUnavailableError
from src.core.llm import CompletionClient, EmbeddingClient
from src.core.registry import ChatRepository
from src.core.vectorstore import QdrantStore, ScoredChunk
from src.models.chat_models import ChatMessage, ChatSession, QueryResponse, RagMetadata, ReferencedChunk
from src.models.enums import FallbackReason, MessageRole
from src.utils.helpers import preview_text

from .prompts import FALLBACK_PREFIX, GENERAL_SYSTEM_PROMPT, build_rag_prompt, technical_difficulties_answer

logger = logging.getLogger(__name__)

# A truncated passage shorter than this is left out instead
MIN_TRUNCATED_PASSAGE = 200


class RagQueryEngine:
    def __init__(
            self,
            embedder: EmbeddingClient,
            completion: CompletionClient,
            vector_store: QdrantStore,
            chat_repository: ChatRepository,
            search_limit: int = 5,
            search_limit_max: int = 20,
            score_threshold: float = 0.6,
            max_context_chars: int = 12000,
    ):
        """
        Initialize the query engine.

        Args:
            embedder: Embeds the question
            completion: Generates the answer
            vector_store: Source of the passages
            chat_repository: Session and message store
            search_limit: Default number of passages
            search_limit_max: Upper bound for a caller-supplied limit
            score_threshold: Default minimum similarity
            max_context_chars: Character budget of the context block
        """
        self.embedder = embedder
        self.completion = completion
        self.vector_store = vector_store
        self.chat_repository = chat_repository
        self.search_limit = search_limit
        self.search_limit_max = search_limit_max
        self.score_threshold = score_threshold
        self.max_context_chars = max_context_chars

    def answer_query(
            self,
            agent_id: str,
            message: str,
            tenant_id: str,
            session_id: Optional[str] = None,
            user_id: Optional[str] = None,
            limit: Optional[int] = None,
            score_threshold: Optional[float] = None,
    ) -> QueryResponse:
        """
        Answer a question with retrieval-augmented generation.

        Args:
            agent_id: Agent whose documents are searched
            message: The user's question
            tenant_id: Owning tenant
            session_id: Existing chat session; a new one is created when absent
            user_id: Asking user
            limit: Number of passages (capped at search_limit_max)
            score_threshold: Minimum similarity of a passage

        Returns:
            The answer with retrieval metadata and referenced chunks

        Raises:
            RetrievalUnavailableError: If the question could not be embedded
        """
        if not message or not message.strip():
            raise DocumentDataError("Message is empty")

        start_time = time.time()
        limit = max(1, min(limit or self.search_limit, self.search_limit_max))
        threshold = self.score_threshold if score_threshold is None else score_threshold

        with ThreadPoolExecutor(max_workers=2) as pool:
            embed_future = pool.submit(self.embedder.embed_query, message)
            session_future = pool.submit(self._load_session, session_id)

            try:
                query_vector = embed_future.result().vectors[0]
            except PipelineError as e:
                logger.error(f"Could not embed query for agent {agent_id}: {e}")
                raise RetrievalUnavailableError(f"Query could not be embedded: {e}") from e
            session = session_future.result()

        rag_metadata = RagMetadata()
        results: List[ScoredChunk] = []
        try:
            results = self.vector_store.query(tenant_id, agent_id, query_vector, limit=limit,
                                              score_threshold=threshold)
            rag_metadata.search_performed = True
        except PipelineError as e:
            logger.error(f"Retrieval failed for agent {agent_id}, answering without documents: {e}")
            rag_metadata.fallback_reason = FallbackReason.RETRIEVAL_ERROR

        rag_metadata.chunks_found = len(results)
        rag_metadata.search_score = results[0].score if results else None
        logger.info(f"Search for agent {agent_id} found {len(results)} chunks (limit {limit}, threshold {threshold})")

        passages, referenced_chunks = self.build_context(results)

        if passages:
            answer, tokens_used, model = self._complete_with_context(message, passages, rag_metadata)
        else:
            if rag_metadata.fallback_reason is None:
                rag_metadata.fallback_reason = FallbackReason.NO_RESULTS
            answer, tokens_used, model = self._complete_without_context(message, rag_metadata)

        response_time_ms = round((time.time() - start_time) * 1000, 2)
        session, assistant_message_id = self._persist_exchange(
            session, session_id, tenant_id, agent_id, user_id, message, answer, tokens_used,
            rag_metadata, referenced_chunks,
        )

        logger.info(f"Answered query for agent {agent_id} in {response_time_ms} ms "
                    f"(fallback: {rag_metadata.fallback_used}, tokens: {tokens_used})")
        return QueryResponse(
            answer=answer,
            session_id=session.session_id,
            message_id=assistant_message_id,
            rag_metadata=rag_metadata,
            referenced_chunks=referenced_chunks,
            tokens_used=tokens_used,
            model=model,
            response_time_ms=response_time_ms,
        )

    def build_context(self, results: List[ScoredChunk]) -> Tuple[List[Tuple[int, str, str]], List[ReferencedChunk]]:
        """
        Fit passages into the context budget in rank order.

        A passage that does not fit is truncated, or left out when too little
        room remains; either way its referenced chunk is flagged.
        """
        passages = []
        referenced = []
        remaining = self.max_context_chars

        for number, result in enumerate(results, start=1):
            content = result.content
            truncated = False
            if len(content) > remaining:
                truncated = True
                content = content[:remaining] if remaining >= MIN_TRUNCATED_PASSAGE else ""

            if content:
                passages.append((number, content, result.payload.get("file_name", "")))
                remaining -= len(content)

            referenced.append(ReferencedChunk(
                chunk_id=result.id,
                file_id=result.file_id,
                file_name=result.payload.get("file_name"),
                chunk_index=result.chunk_index,
                score=result.score,
                content=preview_text(result.content, 200),
                truncated_in_context=truncated,
            ))

        return passages, referenced

    def _complete_with_context(self, message: str, passages, rag_metadata: RagMetadata) -> Tuple[str, int, str]:
        try:
            completion = self.completion.complete(build_rag_prompt(passages), message)
        except PipelineError as e:
            logger.error(f"Completion with context failed: {e}")
            rag_metadata.fallback_used = True
            rag_metadata.fallback_reason = FallbackReason.COMPLETION_ERROR
            return technical_difficulties_answer(message), 0, self.completion.model
        return completion.text, completion.tokens_used, completion.model

    def _complete_without_context(self, message: str, rag_metadata: RagMetadata) -> Tuple[str, int, str]:
        rag_metadata.fallback_used = True
        try:
            completion = self.completion.complete(GENERAL_SYSTEM_PROMPT, message)
        except PipelineError as e:
            logger.error(f"Fallback completion failed: {e}")
            rag_metadata.fallback_reason = FallbackReason.COMPLETION_ERROR
            return technical_difficulties_answer(message), 0, self.completion.model
        return FALLBACK_PREFIX + completion.text, completion.tokens_used, completion.model

    # ------------------------------------------------------------------
    # Chat history
    # ------------------------------------------------------------------

    def _load_session(self, session_id: Optional[str]) -> Optional[ChatSession]:
        if not session_id:
            return None
        try:
            session = self.chat_repository.get_session(session_id)
        except Exception as e:
            logger.error(f"Failed to load chat session {session_id}: {e}")
            return None
        if session is None:
            logger.info(f"Chat session {session_id} not found, a new one will be created")
        return session

    def _persist_exchange(self, session: Optional[ChatSession], session_id: Optional[str], tenant_id: str,
                          agent_id: str, user_id: Optional[str], message: str, answer: str, tokens_used: int,
                          rag_metadata: RagMetadata,
                          referenced_chunks: List[ReferencedChunk]) -> Tuple[ChatSession, Optional[str]]:
        """Store both messages; failures are logged and never fail the answer."""
        now = time.time()
        if session is None:
            session = ChatSession(
                session_id=session_id or str(uuid.uuid4()),
                tenant_id=tenant_id,
                agent_id=agent_id,
                user_id=user_id,
                created_at=now,
            )
            try:
                session = self.chat_repository.create_session(tenant_id, agent_id, user_id,
                                                              session_id=session.session_id)
            except Exception as e:
                logger.error(f"Failed to create chat session {session.session_id}: {e}")
                return session, None

        user_message = ChatMessage(
            message_id=str(uuid.uuid4()),
            session_id=session.session_id,
            tenant_id=tenant_id,
            agent_id=agent_id,
            role=MessageRole.USER,
            content=message,
            created_at=now,
        )
        assistant_message = ChatMessage(
            message_id=str(uuid.uuid4()),
            session_id=session.session_id,
            tenant_id=tenant_id,
            agent_id=agent_id,
            role=MessageRole.ASSISTANT,
            content=answer,
            tokens_used=tokens_used,
            rag_metadata=rag_metadata,
            referenced_chunks=referenced_chunks,
            created_at=time.time(),
        )

        try:
            session = self.chat_repository.append_exchange(session, user_message, assistant_message)
        except Exception as e:
            logger.error(f"Failed to store chat messages for session {session.session_id}: {e}")
            return session, None
        return session, assistant_message.message_id
