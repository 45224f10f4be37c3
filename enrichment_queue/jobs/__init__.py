"""Job system package."""

from enrichment_queue.jobs.types import JobPriority, JobStatus, QueueHealth
from enrichment_queue.jobs.models import Claim, Job, ProcessingOptions, QueueStats
from enrichment_queue.jobs.errors import (
    InvalidJobError,
    JobConflictError,
    JobNotFoundError,
    ProcessingError,
    QueueError,
    StoreError,
)

__all__ = [
    "JobPriority",
    "JobStatus",
    "QueueHealth",
    "Claim",
    "Job",
    "ProcessingOptions",
    "QueueStats",
    "InvalidJobError",
    "JobConflictError",
    "JobNotFoundError",
    "ProcessingError",
    "QueueError",
    "StoreError",
]
