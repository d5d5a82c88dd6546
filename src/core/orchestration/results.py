"""
Structured outcomes returned by job handlers.

The job runner decides between completion, retry and terminal failure from
these values alone.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from src.models.enums import StageErrorReason


@dataclass(frozen=True)
class Ok:
    """The handler finished; result is stored on the job record."""
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Retryable:
    """A transient failure; the queue retries while attempts remain."""
    reason: str
    error_reason: Optional[StageErrorReason] = None
    result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Fatal:
    """A failure no retry can fix; the job fails immediately."""
    reason: str
    error_reason: Optional[StageErrorReason] = None
    result: Optional[Dict[str, Any]] = None


StageResult = Union[Ok, Retryable, Fatal]
