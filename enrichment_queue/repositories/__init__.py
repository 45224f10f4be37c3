"""Job store backends."""

from enrichment_queue.repositories.jobs import JobRepository
from enrichment_queue.repositories.memory import InMemoryJobRepository
from enrichment_queue.repositories.subjects import (
    InMemorySubjectStatusRepository,
    SubjectStatusRepository,
)

__all__ = [
    "JobRepository",
    "InMemoryJobRepository",
    "SubjectStatusRepository",
    "InMemorySubjectStatusRepository",
]
