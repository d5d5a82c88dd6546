"""
Durable, priority-ordered, retryable job queue.

Records live in the JobTracker, ordering in the PriorityQueueManager. A
notifier callback (the dramatiq queue manager in worker processes) is told
whenever a queue has work that becomes runnable now or after a delay.
"""

import time
import uuid
import logging
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel

from src.core.exceptions import InvalidStateError, JobNotFoundError
from src.models.enums import JobPriority, JobState, JobType, JOB_TYPE_QUEUES, OPEN_JOB_STATES, QueueName
from src.models.job_models import (
    AttemptRecord,
    JobHandle,
    JobOptions,
    JobRecord,
    JobStatusView,
    QueueStats,
    parse_payload,
)

from .job_tracker import JobTracker
from .priority_queue import PriorityQueueManager

logger = logging.getLogger(__name__)

Notifier = Callable[[QueueName, int], None]


class JobQueue:
    def __init__(self, tracker: JobTracker, priority_queue: PriorityQueueManager,
                 queue_options: Optional[Dict[str, Dict[str, int]]] = None,
                 default_attempts: int = 3, default_backoff_ms: int = 2000,
                 notifier: Optional[Notifier] = None):
        """
        Initialize the job queue.

        Args:
            tracker: Job record store
            priority_queue: Per-queue ordering store
            queue_options: Per-queue {"attempts", "backoff_ms"} overrides
            default_attempts: Attempt budget when neither job nor queue sets one
            default_backoff_ms: Base delay of the exponential backoff
            notifier: Called with (queue_name, delay_ms) when work becomes available
        """
        self.tracker = tracker
        self.priority_queue = priority_queue
        self.queue_options = queue_options or {}
        self.default_attempts = default_attempts
        self.default_backoff_ms = default_backoff_ms
        self.notifier = notifier

    def set_notifier(self, notifier: Optional[Notifier]) -> None:
        self.notifier = notifier

    def _notify(self, queue_name: QueueName, delay_ms: int = 0) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(queue_name, max(0, int(delay_ms)))
        except Exception as e:
            # The job is already durable; the next wake-up for this queue will pick it up
            logger.error(f"Failed to notify workers for queue {queue_name.value}: {e}")

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, job_type: JobType, payload: Union[BaseModel, Dict[str, Any]],
                options: Optional[JobOptions] = None,
                queue_name: Optional[QueueName] = None) -> JobHandle:
        """
        Add a job to its queue.

        Args:
            job_type: One of the fixed job types
            payload: Typed payload (or a dict validating into one)
            options: Priority, delay, attempt budget, backoff and job key
            queue_name: Defaults to the queue the job type belongs to

        Returns:
            Handle of the new job, or of the open job already holding the job key
        """
        options = options or JobOptions()
        job_type = JobType(job_type)
        queue_name = QueueName(queue_name or JOB_TYPE_QUEUES[job_type])
        typed_payload = parse_payload(payload)

        if typed_payload.type != job_type.value:
            raise ValueError(f"Payload of type {typed_payload.type} cannot be enqueued as {job_type.value}")

        job_id = str(uuid.uuid4())
        queue_defaults = self.queue_options.get(queue_name.value, {})
        now = time.time()
        delay_ms = max(0, options.delay_ms)

        record = JobRecord(
            job_id=job_id,
            queue_name=queue_name,
            job_type=job_type,
            payload=typed_payload,
            priority=options.priority,
            state=JobState.DELAYED if delay_ms else JobState.WAITING,
            max_attempts=max(1, options.max_attempts or queue_defaults.get("attempts", self.default_attempts)),
            backoff_delay_ms=options.backoff_delay_ms
            if options.backoff_delay_ms is not None
            else queue_defaults.get("backoff_ms", self.default_backoff_ms),
            delay_ms=delay_ms,
            job_key=options.job_key,
            sequence=self.priority_queue.next_sequence(),
            created_at=now,
            updated_at=now,
            available_at=now + delay_ms / 1000.0,
        )
        self.tracker.create_job(record)

        # The record exists before the key points at it, so a holder id always resolves
        if options.job_key:
            existing = self._claim_job_key(options.job_key, job_id)
            if existing is not None:
                self.tracker.delete_job(job_id)
                logger.info(f"Job key {options.job_key} already held by open job {existing.job_id}")
                return JobHandle(
                    job_id=existing.job_id,
                    queue_name=existing.queue_name,
                    job_type=existing.job_type,
                    state=existing.state,
                    deduplicated=True,
                )

        if delay_ms:
            self.priority_queue.push_delayed(queue_name, job_id, record.available_at)
        else:
            self.priority_queue.push_waiting(queue_name, job_id, record.priority, record.sequence)

        logger.info(
            f"Enqueued {job_type.value} job {job_id} on {queue_name.value} "
            f"(priority {int(record.priority)}, delay {delay_ms} ms, attempts {record.max_attempts})"
        )
        self._notify(queue_name, delay_ms)

        return JobHandle(job_id=job_id, queue_name=queue_name, job_type=job_type, state=record.state)

    def _claim_job_key(self, job_key: str, job_id: str) -> Optional[JobRecord]:
        """Reserve job_key for job_id, or return the open job already holding it."""
        while True:
            holder_id = self.tracker.claim_job_key(job_key, job_id)
            if holder_id is None or holder_id == job_id:
                return None

            holder = self.tracker.get_job(holder_id)
            if holder is not None and holder.state in OPEN_JOB_STATES:
                return holder

            # The previous holder finished or was cleaned up; take the key over
            if self.tracker.replace_job_key(job_key, holder_id, job_id):
                return None

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> JobRecord:
        record = self.tracker.get_job(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def get_status(self, job_id: str) -> JobStatusView:
        """State, progress, attempts and failure reason of a job."""
        record = self.get_job(job_id)
        return JobStatusView(
            job_id=record.job_id,
            queue_name=record.queue_name,
            job_type=record.job_type,
            state=record.state,
            progress=record.progress,
            progress_message=record.progress_message,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            failure_reason=record.failure_reason,
            result=record.result,
            created_at=record.created_at,
            updated_at=record.updated_at,
            finished_at=record.finished_at,
        )

    def get_queue_stats(self, queue_name: QueueName) -> QueueStats:
        counts = self.priority_queue.get_counts(queue_name)
        return QueueStats(queue_name=QueueName(queue_name), **counts)

    def update_progress(self, job_id: str, progress: float, message: str = "") -> None:
        if self.tracker.update_job_progress(job_id, progress, message) is None:
            raise JobNotFoundError(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that has not started.

        Returns:
            True if the job was removed, False if it is active or already finished
        """
        record = self.get_job(job_id)
        if record.state not in (JobState.WAITING, JobState.DELAYED):
            logger.info(f"Job {job_id} is {record.state.value}; only pending jobs can be cancelled")
            return False

        # Losing this race means a worker reserved the job first
        if not self.priority_queue.remove_pending(record.queue_name, job_id):
            logger.info(f"Job {job_id} was picked up before it could be cancelled")
            return False

        self.tracker.delete_job(job_id)
        if record.job_key:
            self.tracker.release_job_key(record.job_key, job_id)

        logger.info(f"Cancelled job {job_id} ({record.job_type.value})")
        return True

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def promote_due_jobs(self, queue_name: QueueName) -> int:
        """Move delayed jobs whose time has come into the waiting set."""
        promoted = 0
        for job_id in self.priority_queue.due_delayed(queue_name):
            record = self.tracker.get_job(job_id)
            if record is None:
                self.priority_queue.remove_pending(queue_name, job_id)
                continue

            if self.priority_queue.promote(queue_name, job_id, record.priority, record.sequence):
                record.state = JobState.WAITING
                self.tracker.save_job(record)
                promoted += 1
        return promoted

    def reserve(self, queue_name: QueueName) -> Optional[JobRecord]:
        """
        Take the next runnable job off a queue and mark it active.

        Returns:
            The active job record, or None if nothing is runnable now
        """
        queue_name = QueueName(queue_name)
        self.promote_due_jobs(queue_name)

        while True:
            job_id = self.priority_queue.pop_next(queue_name)
            if job_id is None:
                self._rearm_delayed(queue_name)
                return None

            record = self.tracker.get_job(job_id)
            if record is None:
                logger.warning(f"Dropping queue entry for missing job {job_id}")
                self.priority_queue.release_active(queue_name, job_id)
                continue

            now = time.time()
            record.state = JobState.ACTIVE
            record.attempts += 1
            record.started_at = now
            record.attempt_history.append(AttemptRecord(attempt=record.attempts, started_at=now))
            self.tracker.save_job(record)

            logger.info(f"Reserved job {job_id} ({record.job_type.value}) attempt {record.attempts}/{record.max_attempts}")
            return record

    def _rearm_delayed(self, queue_name: QueueName) -> None:
        next_at = self.priority_queue.next_delayed_at(queue_name)
        if next_at is not None:
            self._notify(queue_name, max(100, int((next_at - time.time()) * 1000)))

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> JobRecord:
        record = self.get_job(job_id)
        if record.state != JobState.ACTIVE:
            raise InvalidStateError(f"Job {job_id} is {record.state.value}, not active")

        now = time.time()
        record.state = JobState.COMPLETED
        record.progress = 100.0
        record.result = result or {}
        record.finished_at = now
        self._close_attempt(record, "completed")
        self.tracker.save_job(record)
        self.priority_queue.mark_finished(record.queue_name, job_id, JobState.COMPLETED)

        if record.job_key:
            self.tracker.release_job_key(record.job_key, job_id)

        logger.info(f"Job {job_id} ({record.job_type.value}) completed")
        return record

    def backoff_delay_ms(self, record: JobRecord) -> int:
        """Exponential backoff: base, 2x base, 4x base, ..."""
        return int(record.backoff_delay_ms * (2 ** max(0, record.attempts - 1)))

    def fail(self, job_id: str, reason: str, retryable: bool = True,
             result: Optional[Dict[str, Any]] = None) -> JobRecord:
        """
        Record a failed attempt.

        Retryable failures are rescheduled with exponential backoff while the
        attempt budget lasts; anything else marks the job failed for good.

        Returns:
            The updated record; state FAILED means no further attempts
        """
        record = self.get_job(job_id)
        if record.state != JobState.ACTIVE:
            raise InvalidStateError(f"Job {job_id} is {record.state.value}, not active")

        now = time.time()
        record.failure_reason = reason
        if result is not None:
            record.result = result

        if retryable and record.attempts < record.max_attempts:
            delay_ms = self.backoff_delay_ms(record)
            record.state = JobState.DELAYED
            record.available_at = now + delay_ms / 1000.0
            self._close_attempt(record, "retry", reason)
            self.tracker.save_job(record)
            self.priority_queue.release_active(record.queue_name, job_id)
            self.priority_queue.push_delayed(record.queue_name, job_id, record.available_at)

            logger.warning(
                f"Job {job_id} ({record.job_type.value}) attempt {record.attempts}/{record.max_attempts} failed: "
                f"{reason}. Retrying in {delay_ms} ms"
            )
            self._notify(record.queue_name, delay_ms)
            return record

        if not retryable:
            # Spend the remaining budget so the record shows no attempts are left
            record.max_attempts = record.attempts

        record.state = JobState.FAILED
        record.finished_at = now
        self._close_attempt(record, "failed", reason)
        self.tracker.save_job(record)
        self.priority_queue.mark_finished(record.queue_name, job_id, JobState.FAILED)

        if record.job_key:
            self.tracker.release_job_key(record.job_key, job_id)

        logger.error(f"Job {job_id} ({record.job_type.value}) failed after {record.attempts} attempt(s): {reason}")
        return record

    @staticmethod
    def _close_attempt(record: JobRecord, outcome: str, reason: Optional[str] = None) -> None:
        if record.attempt_history:
            attempt = record.attempt_history[-1]
            attempt.finished_at = time.time()
            attempt.outcome = outcome
            attempt.reason = reason

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clean(self, queue_name: Optional[QueueName] = None, older_than_days: float = 7,
              states=(JobState.COMPLETED, JobState.FAILED)) -> int:
        """Explicitly purge finished jobs older than the retention window."""
        deleted = self.tracker.cleanup_old_jobs(retention_days=older_than_days, states=states, queue_name=queue_name)
        for record in deleted:
            self.priority_queue.remove_terminal(record.queue_name, record.job_id)
        return len(deleted)
