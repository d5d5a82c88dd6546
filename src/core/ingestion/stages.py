"""
Ingestion stage handlers.

Each stage turns its job payload into a StageOutput (stats, file updates and
the payload of the next stage) or returns Retryable/Fatal. Stages never touch
the file status; the IngestionPipeline owns every status transition.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from src.core.background.job_queue import JobQueue
from src.core.exceptions import ConfigurationError, PipelineError, TransientServiceError
from src.core.ingestion.chunking import ChunkingEngine
from src.core.ingestion.extraction import TextExtractor
from src.core.llm import EmbeddingClient
from src.core.orchestration.results import Fatal, Retryable
from src.core.registry import FileRegistry
from src.core.storage import ObjectStorage, StorageObjectNotFoundError
from src.core.vectorstore import QdrantStore
from src.models.document_models import Chunk, FileRecord
from src.models.enums import FileStatus, JobPriority, JobType, PipelineStage, StageErrorReason
from src.models.job_models import (
    ChunkTextPayload,
    ExtractTextPayload,
    GenerateEmbeddingsPayload,
    JobRecord,
    StoreVectorsPayload,
)

logger = logging.getLogger(__name__)


@dataclass
class StageOutput:
    """Successful stage result, applied by the pipeline."""
    stats: Dict[str, Any] = field(default_factory=dict)
    file_updates: Dict[str, Any] = field(default_factory=dict)
    successor: Optional[BaseModel] = None
    # Set when the stage finished but the file must not advance (e.g. deleted mid-stage)
    abort_reason: Optional[str] = None


StageRunResult = Union[StageOutput, Retryable, Fatal]


class IngestionStage:
    """Base class of the four ingestion stages."""

    stage: PipelineStage
    job_type: JobType
    status: FileStatus
    next_status: FileStatus
    error_reason: StageErrorReason
    priority: JobPriority = JobPriority.HIGH
    successor_type: Optional[JobType] = None

    def __init__(self, job_queue: JobQueue):
        self.job_queue = job_queue

    def run(self, job: JobRecord, payload, file: FileRecord) -> StageRunResult:
        raise NotImplementedError

    def report_progress(self, job: JobRecord, progress: float, message: str) -> None:
        try:
            self.job_queue.update_progress(job.job_id, progress, message)
        except PipelineError as e:
            logger.warning(f"Could not update progress of job {job.job_id}: {e}")

    def failure(self, error: PipelineError, context: str) -> Union[Retryable, Fatal]:
        """Map a taxonomy error raised inside the stage onto a stage result."""
        message = f"{context}: {error}"
        if error.retryable:
            return Retryable(message, error_reason=self.error_reason)
        return Fatal(message, error_reason=self.error_reason)


class ExtractTextStage(IngestionStage):
    stage = PipelineStage.TEXT_EXTRACTION
    job_type = JobType.EXTRACT_TEXT
    status = FileStatus.EXTRACTING
    next_status = FileStatus.CHUNKING
    error_reason = StageErrorReason.TEXT_EXTRACTION_FAILED
    successor_type = JobType.CHUNK_TEXT

    def __init__(self, job_queue: JobQueue, storage: ObjectStorage, extractor: TextExtractor):
        super().__init__(job_queue)
        self.storage = storage
        self.extractor = extractor

    def run(self, job: JobRecord, payload: ExtractTextPayload, file: FileRecord) -> StageRunResult:
        self.report_progress(job, 10, "Downloading document")
        try:
            data = self.storage.get(payload.storage_key)
        except StorageObjectNotFoundError as e:
            return Fatal(f"Stored document is missing: {e}", error_reason=self.error_reason)
        except PipelineError as e:
            return self.failure(e, "Failed to download document")

        self.report_progress(job, 40, "Extracting text")
        try:
            extraction = self.extractor.extract(data, payload.mime_type, payload.file_name)
        except PipelineError as e:
            return self.failure(e, "Text extraction failed")

        if not extraction.text.strip():
            reason = "No text could be extracted"
            if extraction.is_likely_scanned:
                reason += " (the PDF looks scanned)"
            return Fatal(reason, error_reason=self.error_reason)

        self.report_progress(job, 90, f"Extracted {extraction.char_count} characters")
        return StageOutput(
            stats=extraction.stage_stats(),
            successor=ChunkTextPayload(
                file_id=payload.file_id,
                tenant_id=payload.tenant_id,
                agent_id=payload.agent_id,
                file_name=payload.file_name,
                text=extraction.text,
                mime_type=payload.mime_type,
                file_size=payload.file_size,
                chunking=payload.chunking,
            ),
        )


class ChunkTextStage(IngestionStage):
    stage = PipelineStage.CHUNKING
    job_type = JobType.CHUNK_TEXT
    status = FileStatus.CHUNKING
    next_status = FileStatus.EMBEDDING
    error_reason = StageErrorReason.CHUNKING_FAILED
    successor_type = JobType.GENERATE_EMBEDDINGS

    def __init__(self, job_queue: JobQueue, engine: ChunkingEngine):
        super().__init__(job_queue)
        self.engine = engine

    def run(self, job: JobRecord, payload: ChunkTextPayload, file: FileRecord) -> StageRunResult:
        self.report_progress(job, 20, "Chunking text")
        options = payload.chunking
        try:
            result = self.engine.chunk(
                payload.text,
                strategy=options.strategy,
                mime_type=payload.mime_type,
                chunk_size=options.chunk_size,
                chunk_overlap=options.chunk_overlap,
            )
        except PipelineError as e:
            return self.failure(e, "Chunking failed")

        if not result.chunks:
            return Fatal("Chunking produced no chunks", error_reason=self.error_reason)

        chunks = [chunk.model_copy(update={"file_id": payload.file_id}) for chunk in result.chunks]
        stats = {
            **result.stats.model_dump(),
            "strategy": result.strategy.value,
            "chunk_size": result.chunk_size,
            "chunk_overlap": result.chunk_overlap,
            "warnings": result.warnings,
        }
        return StageOutput(
            stats=stats,
            file_updates={"chunk_count": len(chunks)},
            successor=GenerateEmbeddingsPayload(
                file_id=payload.file_id,
                tenant_id=payload.tenant_id,
                agent_id=payload.agent_id,
                file_name=payload.file_name,
                chunks=chunks,
            ),
        )


class GenerateEmbeddingsStage(IngestionStage):
    """
    Embeds chunks in batches.

    A batch that keeps failing is retried one chunk at a time; chunks that
    still fail are dropped and the survivors are re-indexed contiguously.
    """

    stage = PipelineStage.EMBEDDINGS
    job_type = JobType.GENERATE_EMBEDDINGS
    status = FileStatus.EMBEDDING
    next_status = FileStatus.INDEXING
    error_reason = StageErrorReason.EMBEDDING_FAILED
    priority = JobPriority.NORMAL
    successor_type = JobType.STORE_VECTORS

    def __init__(self, job_queue: JobQueue, embedder: EmbeddingClient, batch_size: int = 100,
                 max_retries: int = 3, retry_delay_ms: int = 1000,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(job_queue)
        self.embedder = embedder
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.sleep = sleep

    def _embed_with_retry(self, texts: List[str]):
        """Embed texts, retrying transient errors with a linearly growing delay."""
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.embedder.embed(texts)
            except TransientServiceError as e:
                if attempt == self.max_retries:
                    raise
                delay = self.retry_delay_ms * attempt
                logger.warning(f"Embedding attempt {attempt}/{self.max_retries} failed: {e}. Retrying in {delay} ms")
                self.sleep(delay / 1000.0)

    def run(self, job: JobRecord, payload: GenerateEmbeddingsPayload, file: FileRecord) -> StageRunResult:
        chunks = payload.chunks
        if not chunks:
            return Fatal("No chunks to embed", error_reason=self.error_reason)

        kept: List[Chunk] = []
        vectors: List[List[float]] = []
        tokens_used = 0
        dropped = 0
        last_error: Optional[PipelineError] = None
        total_batches = (len(chunks) + self.batch_size - 1) // self.batch_size

        for batch_number, start in enumerate(range(0, len(chunks), self.batch_size), start=1):
            batch = chunks[start:start + self.batch_size]
            try:
                embedded = self._embed_with_retry([chunk.content for chunk in batch])
                kept.extend(batch)
                vectors.extend(embedded.vectors)
                tokens_used += embedded.tokens_used
            except ConfigurationError as e:
                return Fatal(f"Embedding service misconfigured: {e}", error_reason=self.error_reason)
            except PipelineError as e:
                last_error = e
                logger.warning(f"Batch {batch_number}/{total_batches} failed ({e}); embedding its chunks one by one")
                for chunk in batch:
                    try:
                        embedded = self._embed_with_retry([chunk.content])
                    except ConfigurationError as chunk_error:
                        return Fatal(f"Embedding service misconfigured: {chunk_error}", error_reason=self.error_reason)
                    except PipelineError as chunk_error:
                        last_error = chunk_error
                        dropped += 1
                        logger.warning(f"Dropping chunk {chunk.chunk_index} of file {payload.file_id}: {chunk_error}")
                        continue
                    kept.append(chunk)
                    vectors.extend(embedded.vectors)
                    tokens_used += embedded.tokens_used

            self.report_progress(job, 100.0 * batch_number / total_batches,
                                 f"Embedded batch {batch_number}/{total_batches}")

        if not kept:
            reason = f"No chunk could be embedded: {last_error}"
            if last_error is not None and last_error.retryable:
                return Retryable(reason, error_reason=self.error_reason)
            return Fatal(reason, error_reason=self.error_reason)

        if dropped:
            kept = [chunk.model_copy(update={"chunk_index": index}) for index, chunk in enumerate(kept)]

        logger.info(f"Embedded {len(kept)} chunks of file {payload.file_id} ({dropped} dropped, {tokens_used} tokens)")
        return StageOutput(
            stats={
                "embedded_chunks": len(kept),
                "dropped_chunks": dropped,
                "tokens_used": tokens_used,
                "model": self.embedder.model,
            },
            file_updates={"chunk_count": len(kept)},
            successor=StoreVectorsPayload(
                file_id=payload.file_id,
                tenant_id=payload.tenant_id,
                agent_id=payload.agent_id,
                file_name=payload.file_name,
                chunks=kept,
                vectors=vectors,
                tokens_used=tokens_used,
            ),
        )


class StoreVectorsStage(IngestionStage):
    stage = PipelineStage.INDEXING
    job_type = JobType.STORE_VECTORS
    status = FileStatus.INDEXING
    next_status = FileStatus.COMPLETED
    error_reason = StageErrorReason.QDRANT_FAILED

    def __init__(self, job_queue: JobQueue, vector_store: QdrantStore, registry: FileRegistry):
        super().__init__(job_queue)
        self.vector_store = vector_store
        self.registry = registry

    def run(self, job: JobRecord, payload: StoreVectorsPayload, file: FileRecord) -> StageRunResult:
        def on_batch(stored: int, total: int) -> None:
            self.report_progress(job, 100.0 * stored / total, f"Stored {stored}/{total} vectors")

        try:
            stored = self.vector_store.upsert_chunks(
                tenant_id=payload.tenant_id,
                agent_id=payload.agent_id,
                file_id=payload.file_id,
                chunks=payload.chunks,
                vectors=payload.vectors,
                file_name=payload.file_name,
                progress_callback=on_batch,
            )
        except PipelineError as e:
            return self.failure(e, "Vector upsert failed")

        # A deletion may have run while we were upserting; do not leave vectors behind
        current = self.registry.get(payload.file_id)
        if current is None or current.deletion_requested_at is not None:
            logger.warning(f"File {payload.file_id} was deleted during indexing, removing its vectors again")
            try:
                self.vector_store.delete_by_file(payload.tenant_id, payload.file_id)
            except PipelineError as e:
                return self.failure(e, "Removing vectors of a deleted file failed")
            return StageOutput(abort_reason="File was deleted during indexing")

        return StageOutput(
            stats={"vectors_stored": stored, "tokens_used": payload.tokens_used},
            file_updates={"vector_count": stored},
        )
