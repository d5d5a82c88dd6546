"""
Priority queue management for queued jobs.

Each queue keeps its waiting jobs in a sorted set scored by priority and
enqueue sequence, so the lowest score is always the next job to run and
jobs of equal priority leave in the order they arrived. Delayed jobs wait in
a second sorted set scored by the time they become runnable.
"""

import time
import logging
from typing import Dict, List, Optional

from src.models.enums import JobPriority, JobState, QueueName

logger = logging.getLogger(__name__)

# Room for this many enqueues per priority level before scores overlap
PRIORITY_SPAN = 10 ** 12


class PriorityQueueManager:
    """Manages job ordering and per-state membership for each queue."""

    def __init__(self, redis_client, key_prefix: str = "rag_system"):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.sequence_key = f"{key_prefix}:queue_sequence"

    def _key(self, queue_name: QueueName, state: str) -> str:
        return f"{self.key_prefix}:queue:{QueueName(queue_name).value}:{state}"

    def next_sequence(self) -> int:
        return int(self.redis.incr(self.sequence_key))

    @staticmethod
    def score(priority: JobPriority, sequence: int) -> float:
        return float(int(priority) * PRIORITY_SPAN + sequence)

    def push_waiting(self, queue_name: QueueName, job_id: str, priority: JobPriority, sequence: int) -> None:
        """Register a runnable job."""
        self.redis.zadd(self._key(queue_name, JobState.WAITING.value), {job_id: self.score(priority, sequence)})
        logger.debug(f"Job {job_id} waiting on {queue_name} with priority {int(priority)}")

    def push_delayed(self, queue_name: QueueName, job_id: str, available_at: float) -> None:
        """Register a job that may only run after available_at."""
        self.redis.zadd(self._key(queue_name, JobState.DELAYED.value), {job_id: available_at})
        logger.debug(f"Job {job_id} delayed on {queue_name} until {available_at}")

    def due_delayed(self, queue_name: QueueName, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        return list(self.redis.zrangebyscore(self._key(queue_name, JobState.DELAYED.value), "-inf", now))

    def promote(self, queue_name: QueueName, job_id: str, priority: JobPriority, sequence: int) -> bool:
        """Move a delayed job to the waiting set. Only one caller wins the move."""
        if not self.redis.zrem(self._key(queue_name, JobState.DELAYED.value), job_id):
            return False
        self.push_waiting(queue_name, job_id, priority, sequence)
        return True

    def pop_next(self, queue_name: QueueName) -> Optional[str]:
        """Atomically take the highest priority waiting job and mark it active."""
        popped = self.redis.zpopmin(self._key(queue_name, JobState.WAITING.value), 1)
        if not popped:
            return None

        job_id, _ = popped[0]
        self.redis.sadd(self._key(queue_name, JobState.ACTIVE.value), job_id)
        return job_id

    def mark_finished(self, queue_name: QueueName, job_id: str, state: JobState) -> None:
        """Move an active job to a terminal set."""
        self.redis.srem(self._key(queue_name, JobState.ACTIVE.value), job_id)
        self.redis.sadd(self._key(queue_name, state.value), job_id)

    def release_active(self, queue_name: QueueName, job_id: str) -> None:
        self.redis.srem(self._key(queue_name, JobState.ACTIVE.value), job_id)

    def remove_pending(self, queue_name: QueueName, job_id: str) -> bool:
        """Remove a job that has not started yet. Returns False if it was not pending."""
        removed = self.redis.zrem(self._key(queue_name, JobState.WAITING.value), job_id)
        removed += self.redis.zrem(self._key(queue_name, JobState.DELAYED.value), job_id)
        return removed > 0

    def remove_terminal(self, queue_name: QueueName, job_id: str) -> None:
        self.redis.srem(self._key(queue_name, JobState.COMPLETED.value), job_id)
        self.redis.srem(self._key(queue_name, JobState.FAILED.value), job_id)

    def next_delayed_at(self, queue_name: QueueName) -> Optional[float]:
        """Time at which the earliest delayed job becomes runnable."""
        earliest = self.redis.zrange(self._key(queue_name, JobState.DELAYED.value), 0, 0, withscores=True)
        if not earliest:
            return None
        return float(earliest[0][1])

    def get_counts(self, queue_name: QueueName) -> Dict[str, int]:
        return {
            JobState.WAITING.value: int(self.redis.zcard(self._key(queue_name, JobState.WAITING.value))),
            JobState.DELAYED.value: int(self.redis.zcard(self._key(queue_name, JobState.DELAYED.value))),
            JobState.ACTIVE.value: int(self.redis.scard(self._key(queue_name, JobState.ACTIVE.value))),
            JobState.COMPLETED.value: int(self.redis.scard(self._key(queue_name, JobState.COMPLETED.value))),
            JobState.FAILED.value: int(self.redis.scard(self._key(queue_name, JobState.FAILED.value))),
        }
