"""Queue error hierarchy.

Store errors propagate to callers. Processing errors are converted into
``fail`` calls by the worker and never escape it.
"""

from typing import Optional
from uuid import UUID


class QueueError(Exception):
    """Base error for queue operations."""


class StoreError(QueueError):
    """The job store could not complete an operation.

    The job's state is unknown/unchanged; callers should try again later
    rather than marking the job failed.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class InvalidJobError(QueueError):
    """Enqueue input was rejected."""


class JobNotFoundError(QueueError):
    """No job exists with the given id."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobConflictError(QueueError):
    """Transition requested on a job that is not in the required state.

    Raised when ``complete``/``fail`` target a job that is no longer
    ``processing`` (already finished, or reaped from a stale worker), or that
    is processing under a newer claim than the caller holds.
    """

    def __init__(
        self,
        job_id: UUID,
        expected: str,
        actual: Optional[str],
        detail: Optional[str] = None,
    ):
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        self.detail = detail
        message = f"Job {job_id} is {actual or 'missing'}, expected {expected}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProcessingError(Exception):
    """The AI processor failed to enrich a subject."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
