"""
Error taxonomy shared by the pipelines, the job queue and the adapters.

Adapters translate vendor exceptions into these classes so that callers can
decide on retries without inspecting error messages.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by this package."""

    retryable = False


class TransientServiceError(PipelineError):
    """Network failure, timeout, rate limit or 5xx from a collaborator."""

    retryable = True

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class DocumentDataError(PipelineError):
    """Malformed document or empty input that a retry cannot fix."""


class ConfigurationError(PipelineError):
    """Missing credentials or endpoints."""


class NotFoundError(PipelineError):
    """A referenced entity does not exist."""


class FileRecordNotFoundError(NotFoundError):
    def __init__(self, file_id: str):
        super().__init__(f"File {file_id} not found")
        self.file_id = file_id


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidStateError(PipelineError):
    """The requested operation does not apply to the entity's current state."""


class UploadValidationError(PipelineError):
    """An upload was rejected before anything was stored."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class RetrievalUnavailableError(PipelineError):
    """The query could not be embedded, so no retrieval is possible."""


def is_retryable(error: BaseException) -> bool:
    """Errors outside the taxonomy are treated as transient."""
    if isinstance(error, PipelineError):
        return error.retryable
    return True
