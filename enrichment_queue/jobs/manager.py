"""Queue manager - owns the enrichment job lifecycle.

State machine:

    queued --claim_next--> processing --complete--> completed
    processing --fail (attempts < max)--> queued
    processing --fail (attempts >= max)--> failed
    failed --retry_failed_job--> queued (attempts reset)

Retries are not scheduled separately: a failed attempt re-queues the job
and the next claim picks it up again. Ordering is priority first, then
oldest first, so a sustained stream of high-priority work can starve low
priority jobs; that trade-off is accepted.
"""

from datetime import timedelta
from typing import Optional
from uuid import UUID

import structlog

from enrichment_queue.config import get_settings
from enrichment_queue.jobs.errors import (
    InvalidJobError,
    JobConflictError,
    JobNotFoundError,
)
from enrichment_queue.jobs.models import (
    Claim,
    Job,
    ProcessingOptions,
    QueueStats,
    utcnow,
)
from enrichment_queue.jobs.types import JobPriority, JobStatus
from enrichment_queue.repositories.base import JobStore
from enrichment_queue.routers import metrics

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000
STALE_CLAIM_ERROR = "stale claim timeout"


class QueueManager:
    """Lifecycle operations on top of a job store."""

    def __init__(
        self,
        store: JobStore,
        subjects=None,
        max_attempts: Optional[int] = None,
        stats_window_hours: Optional[int] = None,
        stale_timeout_minutes: Optional[int] = None,
    ):
        """
        Args:
            store: Job store backend (Postgres or in-memory)
            subjects: Optional subject status repository; when set, every
                transition is mirrored onto the subject record
            max_attempts: Default attempt ceiling for new jobs
            stats_window_hours: Window for average timings in stats()
            stale_timeout_minutes: Default reaper threshold
        """
        settings = get_settings()
        self._store = store
        self._subjects = subjects
        self._max_attempts = max_attempts or settings.job_max_attempts
        self._stats_window_hours = stats_window_hours or settings.stats_window_hours
        self._stale_timeout_minutes = (
            stale_timeout_minutes or settings.job_stale_timeout_minutes
        )

    @property
    def store(self) -> JobStore:
        return self._store

    async def enqueue(
        self,
        subject_id: str,
        owner_id: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
        priority: JobPriority | str | int = JobPriority.NORMAL,
        max_attempts: Optional[int] = None,
    ) -> UUID:
        """Insert a queued job for a subject and return its id.

        The queue does not dedupe by subject: enqueuing the same subject
        twice creates two jobs.

        Raises:
            InvalidJobError: empty subject id, bad priority or attempt ceiling
            StoreError: the insert failed
        """
        if not subject_id or not str(subject_id).strip():
            raise InvalidJobError("subject_id must be non-empty")
        try:
            priority = JobPriority.parse(priority)
        except ValueError as e:
            raise InvalidJobError(str(e)) from e

        ceiling = max_attempts if max_attempts is not None else self._max_attempts
        if ceiling < 1:
            raise InvalidJobError("max_attempts must be at least 1")

        job = await self._store.insert(
            subject_id=str(subject_id),
            owner_id=owner_id,
            priority=priority,
            options=options or ProcessingOptions(),
            max_attempts=ceiling,
        )
        metrics.record_enqueued(priority.name.lower())
        logger.info(
            "job_enqueued",
            job_id=str(job.id),
            subject_id=job.subject_id,
            owner_id=owner_id,
            priority=priority.name.lower(),
        )
        await self._reflect(job)
        return job.id

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the next eligible job, or None if the queue is empty."""
        job = await self._store.claim(worker_id)
        if job is None:
            return None

        metrics.record_claimed()
        logger.info(
            "job_claimed",
            job_id=str(job.id),
            subject_id=job.subject_id,
            worker_id=worker_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        await self._reflect(job)
        return job

    async def complete(self, job_id: UUID, claim: Claim) -> Job:
        """Mark a processing job completed.

        Applies only while ``claim`` is still the job's current lease, so a
        worker whose job was reaped and handed to someone else cannot
        finish it on their behalf.

        Raises:
            JobNotFoundError: unknown job
            JobConflictError: job is not processing, or is held by a newer claim
        """
        job = await self._store.mark_completed(job_id, claim)
        if job is None:
            await self._raise_transition_error(job_id, claim)

        metrics.record_completed()
        logger.info("job_completed", job_id=str(job_id), subject_id=job.subject_id)
        await self._reflect(job)
        return job

    async def fail(self, job_id: UUID, reason: str, claim: Claim) -> Job:
        """Record a failed attempt; re-queue or permanently fail the job.

        Raises:
            JobNotFoundError: unknown job
            JobConflictError: job is not processing, or is held by a newer claim
        """
        reason = _normalize_reason(reason)
        job = await self._store.record_failure(job_id, reason, claim)
        if job is None:
            await self._raise_transition_error(job_id, claim)

        self._log_failure(job)
        await self._reflect(job)
        return job

    async def retry_failed_job(self, job_id: UUID) -> bool:
        """Move a failed job back to queued with a fresh attempt budget.

        Returns False (and changes nothing) if the job is not failed.
        """
        job = await self._store.reset_failed(job_id)
        if job is None:
            logger.info("job_retry_skipped", job_id=str(job_id))
            return False

        metrics.record_retried()
        logger.info("job_retried", job_id=str(job_id), subject_id=job.subject_id)
        await self._reflect(job)
        return True

    async def retry_all_failed(self, limit: int = 50) -> int:
        """Retry up to ``limit`` failed jobs. Returns how many were re-queued."""
        failed = await self.list_failed_jobs(limit=limit)
        retried = 0
        for job in failed:
            if await self.retry_failed_job(job.id):
                retried += 1
        logger.info("failed_jobs_retried", retried=retried, candidates=len(failed))
        return retried

    async def list_failed_jobs(self, limit: int = 50, offset: int = 0) -> list[Job]:
        """Dead-letter set: jobs in terminal failed state."""
        jobs, _ = await self._store.list_jobs(
            status=JobStatus.FAILED, limit=limit, offset=offset
        )
        return jobs

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        return await self._store.list_jobs(
            status=status,
            owner_id=owner_id,
            subject_id=subject_id,
            limit=limit,
            offset=offset,
        )

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        return await self._store.get(job_id)

    async def stats(self, window_hours: Optional[int] = None) -> QueueStats:
        """Counts by status and average timings of recently completed jobs."""
        stats = await self._store.stats(window_hours or self._stats_window_hours)
        metrics.set_queue_depth({s.value: stats.count_for(s) for s in JobStatus})
        return stats

    async def reap_stale(self, timeout_minutes: Optional[int] = None) -> int:
        """Fail processing jobs whose claim is older than the threshold.

        A reaped job is re-queued if it has attempts left, so a worker that
        crashed mid-job does not strand it in processing forever.
        """
        minutes = timeout_minutes or self._stale_timeout_minutes
        reaped = await self._store.reap_stale(minutes, STALE_CLAIM_ERROR)
        metrics.record_reaped(len(reaped))
        for job in reaped:
            self._log_failure(job)
            await self._reflect(job)
        if reaped:
            logger.warning(
                "stale_jobs_reaped", count=len(reaped), timeout_minutes=minutes
            )
        return len(reaped)

    async def cleanup_old_jobs(self, older_than_days: int = 30) -> int:
        """Delete completed/failed jobs created more than N days ago."""
        if older_than_days < 1:
            raise InvalidJobError("older_than_days must be at least 1")
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await self._store.delete_terminal_before(cutoff)
        logger.info(
            "old_jobs_cleaned", deleted=deleted, older_than_days=older_than_days
        )
        return deleted

    async def _raise_transition_error(self, job_id: UUID, claim: Claim):
        current = await self._store.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        expected = JobStatus.PROCESSING.value
        detail = None
        if current.status == JobStatus.PROCESSING:
            held = current.claim
            detail = (
                f"claimed by {held.worker_id} attempt {held.attempt}, "
                f"not {claim.worker_id} attempt {claim.attempt}"
            )
        logger.warning(
            "job_transition_conflict",
            job_id=str(job_id),
            expected=expected,
            actual=current.status.value,
            worker_id=claim.worker_id,
            attempt=claim.attempt,
            detail=detail,
        )
        raise JobConflictError(job_id, expected, current.status.value, detail)

    def _log_failure(self, job: Job) -> None:
        terminal = job.status == JobStatus.FAILED
        metrics.record_failed(terminal)
        if terminal:
            logger.warning(
                "job_failed",
                job_id=str(job.id),
                subject_id=job.subject_id,
                attempts=job.attempts,
                error=job.last_error,
            )
        else:
            logger.info(
                "job_retry_scheduled",
                job_id=str(job.id),
                subject_id=job.subject_id,
                attempt=job.attempts,
                attempts_remaining=job.attempts_remaining,
                error=job.last_error,
            )

    async def _reflect(self, job: Job) -> None:
        """Mirror the job status onto its subject; never affects the queue outcome."""
        if self._subjects is None:
            return
        try:
            await self._subjects.set_status(job.subject_id, job.status)
        except Exception as e:
            logger.warning(
                "subject_status_update_failed",
                job_id=str(job.id),
                subject_id=job.subject_id,
                status=job.status.value,
                error=str(e),
            )


async def enqueue_safely(
    manager: QueueManager,
    subject_id: str,
    owner_id: Optional[str] = None,
    options: Optional[ProcessingOptions] = None,
    priority: JobPriority | str | int = JobPriority.NORMAL,
) -> Optional[UUID]:
    """Enqueue from the record-creation path.

    Enrichment is best-effort relative to the primary write, so a failure
    is logged and None returned instead of failing the caller.
    """
    try:
        return await manager.enqueue(subject_id, owner_id, options, priority)
    except Exception as e:
        logger.error(
            "enqueue_failed",
            subject_id=subject_id,
            owner_id=owner_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        return None


def _normalize_reason(reason: Optional[str]) -> str:
    reason = (reason or "").strip() or "unknown error"
    if len(reason) > MAX_ERROR_LENGTH:
        reason = reason[: MAX_ERROR_LENGTH - 3] + "..."
    return reason
