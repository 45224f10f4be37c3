"""Job store interface shared by the Postgres and in-memory backends."""

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from enrichment_queue.jobs.models import Claim, Job, ProcessingOptions, QueueStats
from enrichment_queue.jobs.types import JobPriority, JobStatus


class JobStore(Protocol):
    """Durable table of job rows.

    Every state-changing method is a single conditional statement: it
    applies only when the row is in the required state and returns the
    updated job, or None when nothing matched. Deciding what a None means
    (missing vs. wrong state) is the queue manager's job.
    """

    async def insert(
        self,
        subject_id: str,
        owner_id: Optional[str],
        priority: JobPriority,
        options: ProcessingOptions,
        max_attempts: int,
    ) -> Job:
        """Insert a new queued job with attempts = 0."""
        ...

    async def claim(self, worker_id: str) -> Optional[Job]:
        """Atomically move the next eligible queued job to processing.

        Eligible jobs are ordered by priority DESC, created_at ASC. The
        claim stamps claimed_at/claimed_by and increments attempts.
        Concurrent callers never receive the same job.
        """
        ...

    async def mark_completed(self, job_id: UUID, claim: Claim) -> Optional[Job]:
        """processing -> completed, clearing last_error.

        Matches only while the row is still held by ``claim`` (same
        claimed_by and attempts).
        """
        ...

    async def record_failure(
        self, job_id: UUID, error: str, claim: Claim
    ) -> Optional[Job]:
        """processing -> queued (attempts left) or failed (exhausted), under ``claim``."""
        ...

    async def reset_failed(self, job_id: UUID) -> Optional[Job]:
        """failed -> queued with attempts = 0."""
        ...

    async def get(self, job_id: UUID) -> Optional[Job]:
        ...

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Filtered page of jobs (most recently updated first) plus total count."""
        ...

    async def stats(self, window_hours: int) -> QueueStats:
        ...

    async def reap_stale(self, stale_minutes: int, error: str) -> list[Job]:
        """Fail processing jobs whose claim is older than the threshold."""
        ...

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete completed/failed jobs created before cutoff."""
        ...
