from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from .enums import ChunkingStrategy, FileStatus, PipelineStage, StageErrorReason, StageStatus


# ============================================================================
# Chunking Models
# ============================================================================

class Chunk(BaseModel):
    """A bounded span of a file's extracted text."""
    chunk_index: int
    content: str
    content_hash: str
    start_offset: int
    end_offset: int
    length: int
    strategy: ChunkingStrategy
    method: str
    over_limit: bool = False
    file_id: Optional[str] = None


class ChunkingOptions(BaseModel):
    strategy: Optional[ChunkingStrategy] = None
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None


class ChunkingStats(BaseModel):
    total_chunks: int = 0
    original_length: int = 0
    average_chunk_length: float = 0.0
    min_chunk_length: int = 0
    max_chunk_length: int = 0
    dropped_chunks: int = 0
    over_limit_chunks: int = 0


class ChunkingResult(BaseModel):
    chunks: List[Chunk]
    strategy: ChunkingStrategy
    chunk_size: int
    chunk_overlap: int
    stats: ChunkingStats
    warnings: List[str] = []


# ============================================================================
# Extraction Models
# ============================================================================

class ExtractionResult(BaseModel):
    """Plain text pulled out of an uploaded document."""
    text: str
    extraction_method: str
    page_count: Optional[int] = None
    word_count: int = 0
    char_count: int = 0
    is_likely_scanned: bool = False
    text_density: Optional[float] = None
    supported: bool = True
    warnings: List[str] = []

    def stage_stats(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"text"})


# ============================================================================
# File Registry Models
# ============================================================================

class StageInfo(BaseModel):
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    stats: Dict[str, Any] = Field(default_factory=dict)


def _default_processing() -> Dict[str, StageInfo]:
    return {stage.value: StageInfo() for stage in PipelineStage}


class FileRecord(BaseModel):
    """One uploaded document and its processing state."""
    file_id: str
    tenant_id: str
    agent_id: str
    uploaded_by: Optional[str] = None
    original_name: str
    size: int
    mime_type: str
    file_hash: str
    storage_key: str
    storage_url: Optional[str] = None
    status: FileStatus = FileStatus.UPLOADING
    processing: Dict[str, StageInfo] = Field(default_factory=_default_processing)
    error_reason: Optional[StageErrorReason] = None
    error_message: Optional[str] = None
    failed_job_id: Optional[str] = None
    resume_stage: Optional[PipelineStage] = None
    ingestion_job_id: Optional[str] = None
    deletion_requested_at: Optional[float] = None
    duplicate_of: Optional[str] = None
    chunk_count: int = 0
    vector_count: int = 0
    retry_count: int = 0
    created_at: float
    updated_at: float

    def stage(self, stage: PipelineStage) -> StageInfo:
        return self.processing.setdefault(stage.value, StageInfo())


class UploadResult(BaseModel):
    """Outcome of accepting an upload."""
    file: FileRecord
    duplicate: bool = False
    job_id: Optional[str] = None
    estimated_processing_time: Dict[str, Any] = Field(default_factory=dict)
