"""
Models package with domain-separated modules.

This module re-exports all models so callers can import from one place.
"""

# ============================================================================
# Import all enums
# ============================================================================
from .enums import (
    FileStatus,
    FILE_STATUS_RANK,
    PipelineStage,
    StageErrorReason,
    StageStatus,
    DuplicatePolicy,
    ChunkingStrategy,
    QueueName,
    JobType,
    JOB_TYPE_QUEUES,
    JobState,
    OPEN_JOB_STATES,
    JobPriority,
    MessageRole,
    FallbackReason,
)

# ============================================================================
# Import document models
# ============================================================================
from .document_models import (
    Chunk,
    ChunkingOptions,
    ChunkingStats,
    ChunkingResult,
    ExtractionResult,
    StageInfo,
    FileRecord,
    UploadResult,
)

# ============================================================================
# Import job models
# ============================================================================
from .job_models import (
    ExtractTextPayload,
    ChunkTextPayload,
    GenerateEmbeddingsPayload,
    StoreVectorsPayload,
    DeleteFilePayload,
    BatchDeleteFilesPayload,
    JobPayload,
    parse_payload,
    AttemptRecord,
    JobRecord,
    JobOptions,
    JobHandle,
    JobStatusView,
    QueueStats,
)

# ============================================================================
# Import chat models
# ============================================================================
from .chat_models import (
    ReferencedChunk,
    RagMetadata,
    ChatSession,
    ChatMessage,
    QueryResponse,
)

__all__ = [
    # Enums
    "FileStatus",
    "FILE_STATUS_RANK",
    "PipelineStage",
    "StageErrorReason",
    "StageStatus",
    "DuplicatePolicy",
    "ChunkingStrategy",
    "QueueName",
    "JobType",
    "JOB_TYPE_QUEUES",
    "JobState",
    "OPEN_JOB_STATES",
    "JobPriority",
    "MessageRole",
    "FallbackReason",

    # Document models
    "Chunk",
    "ChunkingOptions",
    "ChunkingStats",
    "ChunkingResult",
    "ExtractionResult",
    "StageInfo",
    "FileRecord",
    "UploadResult",

    # Job models
    "ExtractTextPayload",
    "ChunkTextPayload",
    "GenerateEmbeddingsPayload",
    "StoreVectorsPayload",
    "DeleteFilePayload",
    "BatchDeleteFilesPayload",
    "JobPayload",
    "parse_payload",
    "AttemptRecord",
    "JobRecord",
    "JobOptions",
    "JobHandle",
    "JobStatusView",
    "QueueStats",

    # Chat models
    "ReferencedChunk",
    "RagMetadata",
    "ChatSession",
    "ChatMessage",
    "QueryResponse",
]
