from enum import Enum
from typing import Dict


# ============================================================================
# File / Ingestion Enums
# ============================================================================

class FileStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    INDEXING = "indexing"
    COMPLETED = "completed"
    ERROR = "error"


# Position of each status along the pipeline; ERROR sits outside the ordering
FILE_STATUS_RANK: Dict[FileStatus, int] = {
    FileStatus.UPLOADING: 0,
    FileStatus.PROCESSING: 0,
    FileStatus.EXTRACTING: 1,
    FileStatus.CHUNKING: 2,
    FileStatus.EMBEDDING: 3,
    FileStatus.INDEXING: 4,
    FileStatus.COMPLETED: 5,
}


class PipelineStage(str, Enum):
    """Processing stages, keyed the way File.processing stores them."""
    TEXT_EXTRACTION = "text_extraction"
    CHUNKING = "chunking"
    EMBEDDINGS = "embeddings"
    INDEXING = "indexing"


class StageErrorReason(str, Enum):
    TEXT_EXTRACTION_FAILED = "text_extraction_failed"
    CHUNKING_FAILED = "chunking_failed"
    EMBEDDING_FAILED = "embedding_failed"
    QDRANT_FAILED = "qdrant_failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DuplicatePolicy(str, Enum):
    SKIP = "skip"
    REPROCESS = "reprocess"


class ChunkingStrategy(str, Enum):
    RECURSIVE = "recursive"
    MARKDOWN = "markdown"
    TOKEN = "token"
    FIXED = "fixed"


# ============================================================================
# Job Queue Enums
# ============================================================================

class QueueName(str, Enum):
    DOCUMENT_PROCESSING = "document-processing"
    EMBEDDING_GENERATION = "embedding-generation"
    FILE_DELETION = "file-deletion"


class JobType(str, Enum):
    EXTRACT_TEXT = "extract-text"
    CHUNK_TEXT = "chunk-text"
    GENERATE_EMBEDDINGS = "generate-embeddings"
    STORE_VECTORS = "store-vectors"
    DELETE_FILE = "delete-file"
    BATCH_DELETE_FILES = "batch-delete-files"


JOB_TYPE_QUEUES: Dict[JobType, QueueName] = {
    JobType.EXTRACT_TEXT: QueueName.DOCUMENT_PROCESSING,
    JobType.CHUNK_TEXT: QueueName.DOCUMENT_PROCESSING,
    JobType.GENERATE_EMBEDDINGS: QueueName.EMBEDDING_GENERATION,
    JobType.STORE_VECTORS: QueueName.EMBEDDING_GENERATION,
    JobType.DELETE_FILE: QueueName.FILE_DELETION,
    JobType.BATCH_DELETE_FILES: QueueName.FILE_DELETION,
}


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Jobs in these states are still pending or running; job keys dedup against them
OPEN_JOB_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


class JobPriority(int, Enum):
    """Lower value runs first."""
    URGENT = 1
    HIGH = 5
    NORMAL = 10
    LOW = 20
    BACKGROUND = 50

    @classmethod
    def from_name(cls, name: str) -> "JobPriority":
        try:
            return cls[name.upper()]
        except KeyError:
            return cls.NORMAL


# ============================================================================
# Chat Enums
# ============================================================================

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class FallbackReason(str, Enum):
    NO_RESULTS = "no_results"
    RETRIEVAL_ERROR = "retrieval_error"
    COMPLETION_ERROR = "completion_error"
