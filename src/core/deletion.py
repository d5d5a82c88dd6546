"""
Background deletion of uploaded files.

A file is removed in three steps: storage object, vector records (selected by
their file_id payload) and finally the registry record. Finished steps are
written into the job result, so a retried job picks up where it stopped.
"""

import time
import logging
from typing import Dict, List, Optional

from src.core.background.job_queue import JobQueue
from src.core.exceptions import FileRecordNotFoundError, InvalidStateError, PipelineError
from src.core.orchestration.job_runner import JobRunner
from src.core.orchestration.results import Fatal, Ok, Retryable, StageResult
from src.core.registry import FileRegistry
from src.core.storage import ObjectStorage
from src.core.vectorstore import QdrantStore
from src.models.enums import JobPriority, JobState, JobType
from src.models.job_models import BatchDeleteFilesPayload, DeleteFilePayload, JobHandle, JobOptions, JobRecord

logger = logging.getLogger(__name__)

DELETION_STEPS = ("storage", "vectors", "registry")


class DeletionPipeline:
    def __init__(self, registry: FileRegistry, job_queue: JobQueue, storage: ObjectStorage,
                 vector_store: QdrantStore):
        self.registry = registry
        self.job_queue = job_queue
        self.storage = storage
        self.vector_store = vector_store

    def register(self, runner: JobRunner) -> None:
        runner.register(JobType.DELETE_FILE, self.handle_delete_file)
        runner.register(JobType.BATCH_DELETE_FILES, self.handle_batch_delete)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def _require_owned(self, file_id: str, tenant_id: str, agent_id: str):
        record = self.registry.require(file_id)
        if record.tenant_id != tenant_id or record.agent_id != agent_id:
            raise FileRecordNotFoundError(file_id)
        return record

    def enqueue_deletion(self, file_id: str, tenant_id: str, agent_id: str,
                         requested_by: Optional[str] = None) -> JobHandle:
        """
        Queue deletion of one file.

        Repeated requests for the same file collapse onto the open job.
        """
        self._require_owned(file_id, tenant_id, agent_id)
        self.registry.mark_deletion_requested(file_id)

        handle = self.job_queue.enqueue(
            JobType.DELETE_FILE,
            DeleteFilePayload(file_id=file_id, tenant_id=tenant_id, agent_id=agent_id, requested_by=requested_by),
            JobOptions(priority=JobPriority.BACKGROUND, job_key=f"file-deletion-{file_id}"),
        )
        logger.info(f"Deletion of file {file_id} queued as job {handle.job_id}"
                    f"{' (already pending)' if handle.deduplicated else ''}")
        return handle

    def enqueue_batch_deletion(self, file_ids: List[str], tenant_id: str, agent_id: str,
                               requested_by: Optional[str] = None) -> JobHandle:
        """Queue one job deleting several files of an agent."""
        unique_ids = list(dict.fromkeys(file_ids))
        if not unique_ids:
            raise InvalidStateError("No files given for batch deletion")

        for file_id in unique_ids:
            record = self.registry.get(file_id)
            if record is None:
                logger.info(f"File {file_id} is already gone; the batch will count it as deleted")
                continue
            if record.tenant_id != tenant_id or record.agent_id != agent_id:
                raise FileRecordNotFoundError(file_id)
            self.registry.mark_deletion_requested(file_id)

        handle = self.job_queue.enqueue(
            JobType.BATCH_DELETE_FILES,
            BatchDeleteFilesPayload(file_ids=unique_ids, tenant_id=tenant_id, agent_id=agent_id,
                                    requested_by=requested_by),
            JobOptions(priority=JobPriority.BACKGROUND,
                       job_key=f"batch-deletion-{agent_id}-{int(time.time() * 1000)}"),
        )
        logger.info(f"Batch deletion of {len(unique_ids)} files queued as job {handle.job_id}")
        return handle

    def cancel_deletion(self, job_id: str) -> bool:
        """
        Cancel a deletion that has not started yet.

        Returns:
            True if the job was cancelled and the files are usable again
        """
        record = self.job_queue.get_job(job_id)
        if record.job_type not in (JobType.DELETE_FILE, JobType.BATCH_DELETE_FILES):
            raise InvalidStateError(f"Job {job_id} is not a deletion job")

        if not self.job_queue.cancel(job_id):
            return False

        file_ids = record.payload.file_ids if record.job_type == JobType.BATCH_DELETE_FILES \
            else [record.payload.file_id]
        for file_id in file_ids:
            self.registry.clear_deletion_requested(file_id)

        logger.info(f"Cancelled deletion job {job_id} for {len(file_ids)} file(s)")
        return True

    def get_deletion_status(self, job_id: str) -> Dict:
        status = self.job_queue.get_status(job_id)
        return {
            "job_id": status.job_id,
            "state": status.state.value,
            "progress": status.progress,
            "attempts": status.attempts,
            "max_attempts": status.max_attempts,
            "failure_reason": status.failure_reason,
            "result": status.result,
            "completed": status.state == JobState.COMPLETED,
        }

    # ------------------------------------------------------------------
    # Deleting
    # ------------------------------------------------------------------

    def delete_file(self, file_id: str, tenant_id: str, steps: Dict[str, bool]) -> Dict[str, bool]:
        """
        Run the deletion steps not yet marked done in steps.

        steps is updated in place after each step, so a failure leaves an
        accurate record of what is already gone.
        """
        record = self.registry.get(file_id)

        if not steps.get("storage"):
            if record is not None and record.storage_key:
                self.storage.delete(record.storage_key)
            steps["storage"] = True

        if not steps.get("vectors"):
            self.vector_store.delete_by_file(tenant_id, file_id)
            steps["vectors"] = True

        if not steps.get("registry"):
            self.registry.delete(file_id)
            steps["registry"] = True

        return steps

    @staticmethod
    def _previous_steps(job: JobRecord, file_id: str) -> Dict[str, bool]:
        result = job.result or {}
        if job.job_type == JobType.BATCH_DELETE_FILES:
            return dict(result.get("files", {}).get(file_id, {}).get("steps", {}))
        return dict(result.get("steps", {}))

    def handle_delete_file(self, job: JobRecord) -> StageResult:
        payload: DeleteFilePayload = job.payload
        steps = self._previous_steps(job, payload.file_id)
        if steps:
            logger.info(f"Resuming deletion of file {payload.file_id}; done so far: {steps}")

        try:
            self.delete_file(payload.file_id, payload.tenant_id, steps)
            self._report(job, 100, "File deleted")
        except PipelineError as e:
            reason = f"Deletion of file {payload.file_id} failed: {e}"
            result = {"file_id": payload.file_id, "steps": steps}
            if e.retryable:
                return Retryable(reason, result=result)
            return Fatal(reason, result=result)

        logger.info(f"File {payload.file_id} deleted")
        return Ok({
            "file_id": payload.file_id,
            "steps": steps,
            "deleted_from": list(DELETION_STEPS),
            "deleted_at": time.time(),
        })

    def handle_batch_delete(self, job: JobRecord) -> StageResult:
        """
        Delete every file of the batch.

        A file failing with a transient error makes the job retry while attempts
        remain; files already deleted, or failed for good, are skipped on the
        retry. Failures left on the final attempt are recorded in the result and
        their files stay usable. Progress is finished files over total files.
        """
        payload: BatchDeleteFilesPayload = job.payload
        previous = (job.result or {}).get("files", {})
        total = len(payload.file_ids)
        files: Dict[str, Dict] = {}

        for position, file_id in enumerate(payload.file_ids, start=1):
            earlier = previous.get(file_id, {})
            if earlier.get("status") == "deleted" or (earlier.get("status") == "failed"
                                                      and not earlier.get("retryable")):
                files[file_id] = earlier
            else:
                steps = self._previous_steps(job, file_id)
                try:
                    self.delete_file(file_id, payload.tenant_id, steps)
                    files[file_id] = {"status": "deleted", "steps": steps}
                except PipelineError as e:
                    logger.error(f"Failed to delete file {file_id} in batch {job.job_id}: {e}")
                    files[file_id] = {"status": "failed", "steps": steps, "error": str(e),
                                      "retryable": e.retryable}
                    if not e.retryable:
                        self.registry.clear_deletion_requested(file_id)

            self._report(job, 100.0 * position / total, f"Processed {position}/{total} files")

        successful = [file_id for file_id, outcome in files.items() if outcome["status"] == "deleted"]
        failed = [file_id for file_id, outcome in files.items() if outcome["status"] == "failed"]
        summary = {
            "success": not failed,
            "total_files": total,
            "successful_files": len(successful),
            "failed_files": len(failed),
            "files": files,
        }

        retrying = [file_id for file_id in failed if files[file_id]["retryable"]]
        if retrying and job.attempts < job.max_attempts:
            logger.info(f"Batch deletion {job.job_id} will retry {len(retrying)} file(s)")
            return Retryable(f"{len(retrying)} of {total} files could not be deleted yet", result=summary)

        for file_id in retrying:
            self.registry.clear_deletion_requested(file_id)

        logger.info(f"Batch deletion {job.job_id} finished: {len(successful)} deleted, {len(failed)} failed")
        summary["completed_at"] = time.time()
        return Ok(summary)

    def _report(self, job: JobRecord, progress: float, message: str) -> None:
        try:
            self.job_queue.update_progress(job.job_id, progress, message)
        except PipelineError as e:
            logger.warning(f"Could not update progress of job {job.job_id}: {e}")
