"""In-process job store.

Mirrors the Postgres repository's semantics for tests and single-process
local runs. A single asyncio.Lock serializes every read-modify-write, which
gives claim the same exclusivity as FOR UPDATE SKIP LOCKED within one
event loop. Jobs do not survive a restart.
"""

import asyncio
import itertools
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from enrichment_queue.jobs.models import (
    Claim,
    Job,
    ProcessingOptions,
    QueueStats,
    utcnow,
)
from enrichment_queue.jobs.types import JobPriority, JobStatus

logger = structlog.get_logger(__name__)


class InMemoryJobRepository:
    """Dict-backed job store with an atomic claim."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._jobs: dict[UUID, Job] = {}
        # Insertion order breaks created_at ties deterministically
        self._seq: dict[UUID, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    async def insert(
        self,
        subject_id: str,
        owner_id: Optional[str],
        priority: JobPriority,
        options: ProcessingOptions,
        max_attempts: int,
    ) -> Job:
        async with self._lock:
            now = self._clock()
            job = Job(
                id=uuid4(),
                subject_id=subject_id,
                owner_id=owner_id,
                status=JobStatus.QUEUED,
                priority=priority,
                processing_options=options,
                attempts=0,
                max_attempts=max_attempts,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            self._seq[job.id] = next(self._counter)
            return replace(job)

    async def claim(self, worker_id: str) -> Optional[Job]:
        async with self._lock:
            eligible = [j for j in self._jobs.values() if j.status == JobStatus.QUEUED]
            if not eligible:
                return None
            job = min(
                eligible,
                key=lambda j: (-int(j.priority), j.created_at, self._seq[j.id]),
            )
            now = self._clock()
            job.status = JobStatus.PROCESSING
            job.claimed_at = now
            job.claimed_by = worker_id
            job.attempts += 1
            job.updated_at = now
            return replace(job)

    async def mark_completed(self, job_id: UUID, claim: Claim) -> Optional[Job]:
        async with self._lock:
            job = self._held(job_id, claim)
            if job is None:
                return None
            now = self._clock()
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.last_error = None
            job.updated_at = now
            return replace(job)

    async def record_failure(
        self, job_id: UUID, error: str, claim: Claim
    ) -> Optional[Job]:
        async with self._lock:
            job = self._held(job_id, claim)
            if job is None:
                return None
            self._apply_failure(job, error)
            return replace(job)

    async def reset_failed(self, job_id: UUID) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.FAILED:
                return None
            job.status = JobStatus.QUEUED
            job.attempts = 0
            job.claimed_at = None
            job.claimed_by = None
            job.completed_at = None
            job.updated_at = self._clock()
            return replace(job)

    async def get(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        matches = [
            j
            for j in self._jobs.values()
            if (status is None or j.status == status)
            and (owner_id is None or j.owner_id == owner_id)
            and (subject_id is None or j.subject_id == subject_id)
        ]
        matches.sort(key=lambda j: (j.updated_at, self._seq[j.id]), reverse=True)
        page = matches[offset : offset + limit]
        return [replace(j) for j in page], len(matches)

    async def stats(self, window_hours: int) -> QueueStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1

        since = self._clock() - timedelta(hours=window_hours)
        recent = [
            j
            for j in self._jobs.values()
            if j.status == JobStatus.COMPLETED
            and j.completed_at is not None
            and j.claimed_at is not None
            and j.completed_at >= since
        ]
        avg_queue = avg_processing = None
        if recent:
            avg_queue = sum(
                (j.claimed_at - j.created_at).total_seconds() for j in recent
            ) / len(recent)
            avg_processing = sum(
                (j.completed_at - j.claimed_at).total_seconds() for j in recent
            ) / len(recent)

        return QueueStats(
            queued=counts[JobStatus.QUEUED],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            avg_queue_seconds=avg_queue,
            avg_processing_seconds=avg_processing,
            window_hours=window_hours,
        )

    async def reap_stale(self, stale_minutes: int, error: str) -> list[Job]:
        async with self._lock:
            cutoff = self._clock() - timedelta(minutes=stale_minutes)
            reaped = []
            for job in self._jobs.values():
                if (
                    job.status == JobStatus.PROCESSING
                    and job.claimed_at is not None
                    and job.claimed_at < cutoff
                ):
                    self._apply_failure(job, error)
                    reaped.append(replace(job))
            return reaped

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status.is_terminal and job.created_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
                del self._seq[job_id]
            return len(doomed)

    def _held(self, job_id: UUID, claim: Claim) -> Optional[Job]:
        """The job, if it is processing under exactly this claim."""
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        if job.claim != claim:
            return None
        return job

    def _apply_failure(self, job: Job, error: str) -> None:
        job.status = (
            JobStatus.FAILED if job.attempts >= job.max_attempts else JobStatus.QUEUED
        )
        job.last_error = error
        job.updated_at = self._clock()
