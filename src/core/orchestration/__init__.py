"""
Job Orchestration
Handler outcomes, job execution and dramatiq dispatch.
"""

from .job_runner import JobRunner
from .queue_manager import QueueManager
from .results import Fatal, Ok, Retryable, StageResult

__all__ = [
    "JobRunner",
    "QueueManager",
    "Ok",
    "Retryable",
    "Fatal",
    "StageResult",
]
