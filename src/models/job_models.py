from typing import Dict, List, Optional, Union, Any, Literal, Annotated
from pydantic import BaseModel, Field, TypeAdapter

from .document_models import Chunk, ChunkingOptions
from .enums import JobPriority, JobState, JobType, QueueName


# ============================================================================
# Job Payloads (one variant per job type, discriminated by "type")
# ============================================================================

class FilePayloadBase(BaseModel):
    file_id: str
    tenant_id: str
    agent_id: str
    file_name: str = ""


class ExtractTextPayload(FilePayloadBase):
    type: Literal["extract-text"] = "extract-text"
    storage_key: str
    mime_type: str
    file_size: int = 0
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)


class ChunkTextPayload(FilePayloadBase):
    type: Literal["chunk-text"] = "chunk-text"
    text: str
    mime_type: str
    file_size: int = 0
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)


class GenerateEmbeddingsPayload(FilePayloadBase):
    type: Literal["generate-embeddings"] = "generate-embeddings"
    chunks: List[Chunk]


class StoreVectorsPayload(FilePayloadBase):
    type: Literal["store-vectors"] = "store-vectors"
    chunks: List[Chunk]
    vectors: List[List[float]]
    tokens_used: int = 0


class DeleteFilePayload(BaseModel):
    type: Literal["delete-file"] = "delete-file"
    file_id: str
    tenant_id: str
    agent_id: str
    requested_by: Optional[str] = None


class BatchDeleteFilesPayload(BaseModel):
    type: Literal["batch-delete-files"] = "batch-delete-files"
    file_ids: List[str]
    tenant_id: str
    agent_id: str
    requested_by: Optional[str] = None


JobPayload = Annotated[
    Union[
        ExtractTextPayload,
        ChunkTextPayload,
        GenerateEmbeddingsPayload,
        StoreVectorsPayload,
        DeleteFilePayload,
        BatchDeleteFilesPayload,
    ],
    Field(discriminator="type"),
]

job_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(data: Union[Dict[str, Any], BaseModel]) -> BaseModel:
    """Validate a raw payload into its typed variant."""
    if isinstance(data, BaseModel):
        return data
    return job_payload_adapter.validate_python(data)


# ============================================================================
# Job Records
# ============================================================================

class AttemptRecord(BaseModel):
    attempt: int
    started_at: float
    finished_at: Optional[float] = None
    outcome: Optional[str] = None
    reason: Optional[str] = None


class JobRecord(BaseModel):
    """Durable state of one queued unit of work."""
    job_id: str
    queue_name: QueueName
    job_type: JobType
    payload: JobPayload
    priority: JobPriority = JobPriority.NORMAL
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    backoff_delay_ms: int = 2000
    delay_ms: int = 0
    job_key: Optional[str] = None
    sequence: int = 0
    progress: float = 0.0
    progress_message: str = ""
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    attempt_history: List[AttemptRecord] = []
    created_at: float
    updated_at: float
    available_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class JobOptions(BaseModel):
    priority: JobPriority = JobPriority.NORMAL
    delay_ms: int = 0
    max_attempts: Optional[int] = None
    backoff_delay_ms: Optional[int] = None
    job_key: Optional[str] = None


class JobHandle(BaseModel):
    job_id: str
    queue_name: QueueName
    job_type: JobType
    state: JobState
    deduplicated: bool = False


class JobStatusView(BaseModel):
    job_id: str
    queue_name: QueueName
    job_type: JobType
    state: JobState
    progress: float
    progress_message: str = ""
    attempts: int
    max_attempts: int
    failure_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: float
    updated_at: float
    finished_at: Optional[float] = None


class QueueStats(BaseModel):
    queue_name: QueueName
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.delayed + self.active + self.completed + self.failed
