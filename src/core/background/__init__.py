"""
Background infrastructure - Redis job records, priority ordering and the broker.
The worker entry point lives in .worker and is only imported by dramatiq.
"""

from .common import WorkerHeartbeat, create_broker, create_redis_client
from .job_queue import JobQueue
from .job_tracker import JobTracker
from .priority_queue import PriorityQueueManager

__all__ = [
    "JobQueue",
    "JobTracker",
    "PriorityQueueManager",
    "WorkerHeartbeat",
    "create_broker",
    "create_redis_client",
]
