from typing import List, Optional
from pydantic import BaseModel, Field

from .enums import FallbackReason, MessageRole


class ReferencedChunk(BaseModel):
    chunk_id: str
    file_id: str
    file_name: Optional[str] = None
    chunk_index: int
    score: float
    content: str  # preview, not the full chunk
    truncated_in_context: bool = False


class RagMetadata(BaseModel):
    search_performed: bool = False
    chunks_found: int = 0
    search_score: Optional[float] = None
    fallback_used: bool = False
    fallback_reason: Optional[FallbackReason] = None


class ChatSession(BaseModel):
    session_id: str
    tenant_id: str
    agent_id: str
    user_id: Optional[str] = None
    total_messages: int = 0
    total_tokens: int = 0
    created_at: float
    last_message_at: Optional[float] = None


class ChatMessage(BaseModel):
    message_id: str
    session_id: str
    tenant_id: str
    agent_id: str
    role: MessageRole
    content: str
    tokens_used: int = 0
    rag_metadata: Optional[RagMetadata] = None
    referenced_chunks: List[ReferencedChunk] = Field(default_factory=list)
    created_at: float


class QueryResponse(BaseModel):
    """What the chat surface receives for one question."""
    answer: str
    session_id: str
    message_id: Optional[str] = None
    rag_metadata: RagMetadata
    referenced_chunks: List[ReferencedChunk] = Field(default_factory=list)
    tokens_used: int = 0
    model: Optional[str] = None
    response_time_ms: float = 0.0
