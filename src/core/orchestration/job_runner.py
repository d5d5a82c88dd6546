"""
Executes reserved jobs and turns handler outcomes into queue transitions.
"""

import logging
from typing import Callable, Dict, Optional, Tuple

from src.core.background.job_queue import JobQueue
from src.core.exceptions import is_retryable
from src.models.enums import JobState, JobType, QueueName
from src.models.job_models import JobRecord

from .results import Fatal, Ok, Retryable, StageResult

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRecord], StageResult]
FailureCallback = Callable[[JobRecord, StageResult], None]


class JobRunner:
    """
    Owns the job type -> handler registry.

    Handlers never raise on expected failures; they return Ok, Retryable or
    Fatal. Anything they do raise is classified with the error taxonomy.
    """

    def __init__(self, job_queue: JobQueue):
        self.job_queue = job_queue
        self._handlers: Dict[JobType, Tuple[JobHandler, Optional[FailureCallback]]] = {}

    def register(self, job_type: JobType, handler: JobHandler,
                 on_failure: Optional[FailureCallback] = None) -> None:
        """
        Register the handler for a job type.

        Args:
            job_type: Job type handled
            handler: Called with the active job record
            on_failure: Called once when the job fails for good
        """
        self._handlers[JobType(job_type)] = (handler, on_failure)
        logger.debug(f"Registered handler for {JobType(job_type).value}")

    def registered_types(self):
        return list(self._handlers.keys())

    def run_next(self, queue_name: QueueName) -> Optional[JobRecord]:
        """
        Reserve and execute one job from a queue.

        Returns:
            The job record after execution, or None if nothing was runnable
        """
        record = self.job_queue.reserve(queue_name)
        if record is None:
            return None
        return self.execute(record)

    def execute(self, record: JobRecord) -> JobRecord:
        entry = self._handlers.get(record.job_type)
        if entry is None:
            outcome = Fatal(f"No handler registered for job type {record.job_type.value}")
            return self._apply(record, outcome, None)

        handler, on_failure = entry
        try:
            outcome = handler(record)
        except Exception as e:
            logger.exception(f"Handler for job {record.job_id} ({record.job_type.value}) raised")
            if is_retryable(e):
                outcome = Retryable(f"{type(e).__name__}: {e}")
            else:
                outcome = Fatal(f"{type(e).__name__}: {e}")

        return self._apply(record, outcome, on_failure)

    def _apply(self, record: JobRecord, outcome: StageResult,
               on_failure: Optional[FailureCallback]) -> JobRecord:
        if isinstance(outcome, Ok):
            return self.job_queue.complete(record.job_id, outcome.result)

        retryable = isinstance(outcome, Retryable)
        updated = self.job_queue.fail(record.job_id, outcome.reason, retryable=retryable, result=outcome.result)

        if updated.state == JobState.FAILED and on_failure is not None:
            try:
                on_failure(updated, outcome)
            except Exception as e:
                logger.error(f"Failure callback for job {record.job_id} raised: {e}")
        return updated

    def drain(self, queue_name: QueueName, max_jobs: int = 1000) -> int:
        """Run jobs until the queue has nothing runnable. Returns the number executed."""
        executed = 0
        while executed < max_jobs:
            if self.run_next(queue_name) is None:
                break
            executed += 1
        return executed
