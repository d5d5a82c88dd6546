import time
import logging
from typing import Iterable, List, Optional, Union

from pydantic import ValidationError

from src.models.enums import JobState, QueueName
from src.models.job_models import JobRecord

logger = logging.getLogger(__name__)


class JobTracker:
    """Durable job records and job-key reservations in Redis."""

    def __init__(self, redis_client, key_prefix: str = "rag_system"):
        self.redis = redis_client

        self.job_key = f"{key_prefix}:jobs"
        self.job_keys_key = f"{key_prefix}:job_keys"

    def create_job(self, record: JobRecord) -> None:
        """Create a new job record."""
        self.redis.hset(self.job_key, record.job_id, record.model_dump_json())
        logger.info(f"Created job {record.job_id} ({record.job_type.value}) on {record.queue_name.value}")

    def save_job(self, record: JobRecord) -> None:
        record.updated_at = time.time()
        self.redis.hset(self.job_key, record.job_id, record.model_dump_json())

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Get job information by ID."""
        job_data_json = self.redis.hget(self.job_key, job_id)
        if not job_data_json:
            return None

        try:
            return JobRecord.model_validate_json(job_data_json)
        except ValidationError as e:
            logger.error(f"Job {job_id} has an unreadable record: {e}")
            return None

    def update_job_progress(self, job_id: str, progress: Union[int, float, None], message: str = "") -> Optional[JobRecord]:
        """Update the progress percentage and message for a job."""
        record = self.get_job(job_id)
        if record is None:
            return None

        if progress is not None:
            # Ensure progress is between 0 and 100
            record.progress = max(0.0, min(100.0, float(progress)))
            logger.debug(f"Updated job {job_id} progress to {record.progress}%: {message}")
        record.progress_message = message
        self.save_job(record)
        return record

    def get_all_jobs(self, limit: int = 100, queue_name: Optional[QueueName] = None) -> List[JobRecord]:
        """Get all jobs, optionally filtered by queue, newest first."""
        jobs = []
        for job_id in self.redis.hkeys(self.job_key):
            record = self.get_job(job_id)
            if record is None:
                continue
            if queue_name and record.queue_name != queue_name:
                continue
            jobs.append(record)

        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    def delete_job(self, job_id: str) -> bool:
        """Delete a job by ID."""
        return self.redis.hdel(self.job_key, job_id) > 0

    # ------------------------------------------------------------------
    # Job keys
    # ------------------------------------------------------------------

    def claim_job_key(self, job_key: str, job_id: str) -> Optional[str]:
        """
        Reserve a job key for a new job.

        Returns:
            None when the key was reserved for job_id, otherwise the job id
            currently holding the key
        """
        while True:
            if self.redis.hsetnx(self.job_keys_key, job_key, job_id):
                return None
            holder_id = self.redis.hget(self.job_keys_key, job_key)
            if holder_id is not None:
                return holder_id
            # Released between the two calls; try again

    def replace_job_key(self, job_key: str, holder_id: str, job_id: str) -> bool:
        """Hand a job key from holder_id to job_id, unless someone else took it first."""
        def swap(pipe) -> bool:
            if pipe.hget(self.job_keys_key, job_key) != holder_id:
                return False
            pipe.multi()
            pipe.hset(self.job_keys_key, job_key, job_id)
            return True

        return self.redis.transaction(swap, self.job_keys_key, value_from_callable=True)

    def release_job_key(self, job_key: str, job_id: str) -> None:
        """Release a job key if job_id still holds it."""
        def release(pipe) -> None:
            if pipe.hget(self.job_keys_key, job_key) == job_id:
                pipe.multi()
                pipe.hdel(self.job_keys_key, job_key)

        self.redis.transaction(release, self.job_keys_key)

    def cleanup_old_jobs(self, retention_days: float = 7,
                         states: Iterable[JobState] = (JobState.COMPLETED, JobState.FAILED),
                         queue_name: Optional[QueueName] = None) -> List[JobRecord]:
        """Delete terminal jobs that finished before the retention period."""
        cutoff_time = time.time() - (retention_days * 24 * 60 * 60)
        states = set(states)
        deleted = []

        for record in self.get_all_jobs(limit=10 ** 9, queue_name=queue_name):
            finished_at = record.finished_at or record.updated_at
            if record.state in states and finished_at < cutoff_time:
                self.delete_job(record.job_id)
                if record.job_key:
                    self.release_job_key(record.job_key, record.job_id)
                deleted.append(record)

                if len(deleted) % 50 == 0:
                    logger.info(f"Deleted {len(deleted)} old jobs so far")

        logger.info(f"Old job cleanup completed: deleted {len(deleted)} jobs")
        return deleted
