"""
Ingestion pipeline orchestrator.

Owns the four stages, registers their handlers with the JobRunner and is the
only writer of ingestion status transitions:

    uploading -> extracting -> chunking -> embedding -> indexing -> completed

Every transition is conditional on the current status, so a stale or
duplicated job can never move a file backwards.
"""

import time
import logging
from typing import Dict, Optional

from src.core.background.job_queue import JobQueue
from src.core.exceptions import InvalidStateError, JobNotFoundError, PipelineError
from src.core.orchestration.job_runner import JobRunner
from src.core.orchestration.results import Fatal, Ok, Retryable, StageResult
from src.core.registry import FileRegistry
from src.models.document_models import ChunkingOptions, FileRecord, StageInfo
from src.models.enums import (
    FILE_STATUS_RANK,
    FileStatus,
    JobPriority,
    JobType,
    PipelineStage,
    StageStatus,
)
from src.models.job_models import ExtractTextPayload, JobHandle, JobOptions, JobRecord
from src.utils.logging import OperationLogger

from .stages import IngestionStage, StageOutput

logger = logging.getLogger(__name__)
operation_logger = OperationLogger(logger=logger)


class IngestionPipeline:
    def __init__(self, registry: FileRegistry, job_queue: JobQueue, stages: Dict[JobType, IngestionStage],
                 successor_delays_ms: Optional[Dict[JobType, int]] = None):
        """
        Initialize the pipeline.

        Args:
            registry: File registry
            job_queue: Queue the stage jobs run on
            stages: One stage per ingestion job type
            successor_delays_ms: Delay applied when enqueuing each job type as a successor
        """
        self.registry = registry
        self.job_queue = job_queue
        self.stages = stages
        self.successor_delays_ms = successor_delays_ms or {}
        self._by_stage = {stage.stage: stage for stage in stages.values()}

    def register(self, runner: JobRunner) -> None:
        for job_type in self.stages:
            runner.register(job_type, self.handle, on_failure=self.on_failure)

    def stage_for(self, pipeline_stage: PipelineStage) -> IngestionStage:
        return self._by_stage[pipeline_stage]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def enqueue_ingestion(self, file_id: str, priority: JobPriority = JobPriority.HIGH,
                          chunking: Optional[ChunkingOptions] = None) -> JobHandle:
        """
        Start ingestion of an uploaded file.

        Moves the file from uploading (or processing, after a retry) to
        extracting and enqueues its extract-text job.
        """
        file = self.registry.require(file_id)
        payload = ExtractTextPayload(
            file_id=file.file_id,
            tenant_id=file.tenant_id,
            agent_id=file.agent_id,
            file_name=file.original_name,
            storage_key=file.storage_key,
            mime_type=file.mime_type,
            file_size=file.size,
            chunking=chunking or ChunkingOptions(),
        )

        if not self.registry.advance_status(file_id, [FileStatus.UPLOADING, FileStatus.PROCESSING],
                                            FileStatus.EXTRACTING):
            raise InvalidStateError(f"File {file_id} is {file.status.value}; ingestion cannot start")

        handle = self.job_queue.enqueue(
            JobType.EXTRACT_TEXT,
            payload,
            JobOptions(priority=priority, job_key=self._job_key(JobType.EXTRACT_TEXT, file_id)),
        )
        self.registry.set_fields(file_id, ingestion_job_id=handle.job_id)
        logger.info(f"Ingestion of file {file_id} queued as job {handle.job_id}")
        return handle

    def retry_file(self, file_id: str) -> JobHandle:
        """
        Re-run a failed file from the stage that failed.

        The failed job's stored payload is re-enqueued; when that job has
        already been cleaned up, ingestion restarts from extraction.
        """
        file = self.registry.reset_for_retry(file_id)

        failed_job: Optional[JobRecord] = None
        if file.failed_job_id:
            try:
                failed_job = self.job_queue.get_job(file.failed_job_id)
            except JobNotFoundError:
                logger.info(f"Failed job {file.failed_job_id} of file {file_id} is gone, restarting from extraction")

        if failed_job is None or failed_job.job_type not in self.stages:
            self.registry.set_fields(file_id, resume_stage=PipelineStage.TEXT_EXTRACTION, failed_job_id=None)
            return self.enqueue_ingestion(file_id)

        stage = self.stages[failed_job.job_type]
        if not self.registry.advance_status(file_id, [FileStatus.PROCESSING], stage.status, failed_job_id=None):
            raise InvalidStateError(f"File {file_id} changed state while being retried")

        handle = self.job_queue.enqueue(
            stage.job_type,
            failed_job.payload,
            JobOptions(priority=stage.priority, job_key=self._job_key(stage.job_type, file_id)),
        )
        logger.info(f"Retrying file {file_id} from {stage.stage.value} as job {handle.job_id}")
        return handle

    @staticmethod
    def _job_key(job_type: JobType, file_id: str) -> str:
        return f"{job_type.value}-{file_id}"

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    def handle(self, job: JobRecord) -> StageResult:
        stage = self.stages[job.job_type]
        payload = job.payload
        file = self.registry.get(payload.file_id)

        if file is None:
            return Fatal(f"File {payload.file_id} no longer exists")
        if file.deletion_requested_at is not None:
            return Fatal(f"File {payload.file_id} is being deleted")

        if file.status == FileStatus.ERROR or FILE_STATUS_RANK[file.status] > FILE_STATUS_RANK[stage.status]:
            logger.info(f"Skipping stale {job.job_type.value} job {job.job_id}: file {file.file_id} is {file.status.value}")
            return Ok({"skipped": True, "file_status": file.status.value})
        if file.status != stage.status:
            return Retryable(f"File {file.file_id} is {file.status.value}, not yet {stage.status.value}")

        self.registry.start_stage(file.file_id, stage.stage, stage.status)
        started_at = operation_logger.log_operation_start(stage.stage.value, file_id=file.file_id, job_id=job.job_id)

        try:
            outcome = stage.run(job, payload, file)
        except PipelineError as e:
            outcome = stage.failure(e, f"{stage.stage.value} failed")

        if not isinstance(outcome, StageOutput):
            operation_logger.log_operation_end(stage.stage.value, time.time() - started_at, success=False,
                                               file_id=file.file_id, reason=outcome.reason)
            if outcome.error_reason is None:
                return type(outcome)(outcome.reason, error_reason=stage.error_reason, result=outcome.result)
            return outcome

        if outcome.abort_reason:
            operation_logger.log_operation_end(stage.stage.value, time.time() - started_at, success=False,
                                               file_id=file.file_id, reason=outcome.abort_reason)
            return Fatal(outcome.abort_reason)

        result = self._complete_stage(job, stage, file, outcome, started_at)
        operation_logger.log_operation_end(stage.stage.value, time.time() - started_at, success=True,
                                           file_id=file.file_id)
        return result

    def _complete_stage(self, job: JobRecord, stage: IngestionStage, file: FileRecord,
                        output: StageOutput, started_at: float) -> StageResult:
        result = {"file_id": file.file_id, "stage": stage.stage.value, "stats": output.stats}

        # The successor is queued before the status moves; if it runs first it
        # finds the file one stage behind and is retried
        if output.successor is not None and stage.successor_type is not None:
            handle = self.job_queue.enqueue(
                stage.successor_type,
                output.successor,
                JobOptions(
                    priority=self.stages[stage.successor_type].priority,
                    delay_ms=self.successor_delays_ms.get(stage.successor_type, 0),
                    job_key=self._job_key(stage.successor_type, file.file_id),
                ),
            )
            result["next_job_id"] = handle.job_id

        info = StageInfo(
            status=StageStatus.COMPLETED,
            started_at=file.stage(stage.stage).started_at or started_at,
            completed_at=time.time(),
            stats=output.stats,
        )
        advanced = self.registry.advance_status(
            file.file_id,
            [stage.status],
            stage.next_status,
            stage=stage.stage,
            stage_info=info,
            **output.file_updates,
        )
        if not advanced:
            result["stale"] = True
        return Ok(result)

    def on_failure(self, job: JobRecord, outcome: StageResult) -> None:
        """
        Put the file into the error state once its stage job failed for good.

        A file waiting for deletion is marked too: if the deletion is
        cancelled, the file can be resumed with retry_file.
        """
        stage = self.stages.get(job.job_type)
        if stage is None:
            return

        file = self.registry.get(job.payload.file_id)
        if file is None:
            logger.info(f"Not marking file {job.payload.file_id} as failed: it is deleted")
            return

        error_reason = getattr(outcome, "error_reason", None) or stage.error_reason
        self.registry.mark_error(
            file.file_id,
            stage.stage,
            stage.status,
            error_reason,
            job.failure_reason or getattr(outcome, "reason", "unknown error"),
            job_id=job.job_id,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_file_status(self, file_id: str) -> Dict:
        file = self.registry.require(file_id)
        status = {
            "file_id": file.file_id,
            "status": file.status.value,
            "processing": {name: info.model_dump() for name, info in file.processing.items()},
            "error_reason": file.error_reason.value if file.error_reason else None,
            "error_message": file.error_message,
            "chunk_count": file.chunk_count,
            "vector_count": file.vector_count,
            "retry_count": file.retry_count,
            "deletion_requested": file.deletion_requested_at is not None,
        }
        if file.ingestion_job_id:
            try:
                status["job"] = self.job_queue.get_status(file.ingestion_job_id).model_dump()
            except JobNotFoundError:
                status["job"] = None
        return status
