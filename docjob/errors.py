from __future__ import annotations


class DocJobError(RuntimeError):
    """Base class for engine errors that callers are expected to handle."""


class NotFoundError(DocJobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidStateError(DocJobError):
    def __init__(self, job_id: str, status: str, action: str = "cancel") -> None:
        super().__init__(f"Cannot {action} job in {status} state")
        self.job_id = job_id
        self.status = status
        self.action = action


class HandlerFailure(DocJobError):
    """A job handler raised; the message is what gets stored on the job."""

    def __init__(self, job_type: str, cause: BaseException) -> None:
        message = str(cause).strip() or type(cause).__name__
        super().__init__(message)
        self.job_type = job_type
        self.cause = cause


class StaleTimeoutError(DocJobError):
    """Recorded on `running` jobs failed by staleness reconciliation."""

    code = "stale_timeout"

    def __init__(self, message: str = "Job timed out (stale cleanup)") -> None:
        super().__init__(message)


class MergeReferenceMissing(DocJobError):
    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"Original chunk not found: {chunk_id}")
        self.chunk_id = chunk_id


class CollaboratorUnavailable(DocJobError):
    """An external collaborator (PDF renderer, Markdown compiler, ...) is not configured."""
