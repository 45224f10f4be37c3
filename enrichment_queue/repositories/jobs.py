"""Repository for job queue operations backed by Postgres."""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import structlog

from enrichment_queue.core.resilience import run_once, with_db_retry
from enrichment_queue.jobs.models import Claim, Job, ProcessingOptions, QueueStats
from enrichment_queue.jobs.types import JobPriority, JobStatus

logger = structlog.get_logger(__name__)

# Shared by record_failure and reap_stale: re-queue while attempts remain.
_FAIL_TRANSITION = """
    status = CASE WHEN attempts >= max_attempts THEN 'failed' ELSE 'queued' END,
    last_error = $2,
    updated_at = now()
"""


class JobRepository:
    """Repository for job queue operations."""

    def __init__(self, pool, table: str = "enrichment_jobs"):
        self._pool = pool
        self._table = table

    async def insert(
        self,
        subject_id: str,
        owner_id: Optional[str],
        priority: JobPriority,
        options: ProcessingOptions,
        max_attempts: int,
    ) -> Job:
        """Create a new job in the queue."""
        query = f"""
            INSERT INTO {self._table}
                (subject_id, owner_id, status, priority, processing_options,
                 attempts, max_attempts)
            VALUES ($1, $2, 'queued', $3, $4::jsonb, 0, $5)
            RETURNING *
        """
        row = await run_once(
            self._pool,
            lambda conn: conn.fetchrow(
                query,
                subject_id,
                owner_id,
                int(priority),
                json.dumps(options.to_dict()),
                max_attempts,
            ),
            operation_name="insert",
        )
        return self._row_to_job(row)

    async def claim(self, worker_id: str) -> Optional[Job]:
        """Claim the next available job using FOR UPDATE SKIP LOCKED.

        Selection and update happen in one statement, so a row locked by
        another in-flight claim is skipped rather than waited on.
        """
        query = f"""
            WITH next AS (
                SELECT id FROM {self._table}
                WHERE status = 'queued'
                ORDER BY priority DESC, created_at ASC, id
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE {self._table} j SET
                status = 'processing',
                claimed_at = now(),
                claimed_by = $1,
                attempts = j.attempts + 1,
                updated_at = now()
            FROM next
            WHERE j.id = next.id
            RETURNING j.*
        """
        row = await run_once(
            self._pool,
            lambda conn: conn.fetchrow(query, worker_id),
            operation_name="claim",
        )
        return self._row_to_job(row) if row else None

    async def mark_completed(self, job_id: UUID, claim: Claim) -> Optional[Job]:
        """Mark a processing job as completed if ``claim`` still holds it."""
        query = f"""
            UPDATE {self._table} SET
                status = 'completed',
                completed_at = now(),
                last_error = NULL,
                updated_at = now()
            WHERE id = $1 AND status = 'processing'
              AND claimed_by = $2 AND attempts = $3
            RETURNING *
        """
        row = await run_once(
            self._pool,
            lambda conn: conn.fetchrow(query, job_id, claim.worker_id, claim.attempt),
            operation_name="complete",
        )
        return self._row_to_job(row) if row else None

    async def record_failure(
        self, job_id: UUID, error: str, claim: Claim
    ) -> Optional[Job]:
        """Re-queue or permanently fail a job held by ``claim``, in one statement."""
        query = f"""
            UPDATE {self._table} SET {_FAIL_TRANSITION}
            WHERE id = $1 AND status = 'processing'
              AND claimed_by = $3 AND attempts = $4
            RETURNING *
        """
        row = await run_once(
            self._pool,
            lambda conn: conn.fetchrow(
                query, job_id, error, claim.worker_id, claim.attempt
            ),
            operation_name="fail",
        )
        return self._row_to_job(row) if row else None

    async def reset_failed(self, job_id: UUID) -> Optional[Job]:
        """Give a failed job a fresh attempt budget."""
        query = f"""
            UPDATE {self._table} SET
                status = 'queued',
                attempts = 0,
                claimed_at = NULL,
                claimed_by = NULL,
                completed_at = NULL,
                updated_at = now()
            WHERE id = $1 AND status = 'failed'
            RETURNING *
        """
        row = await run_once(
            self._pool,
            lambda conn: conn.fetchrow(query, job_id),
            operation_name="retry",
        )
        return self._row_to_job(row) if row else None

    async def get(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        query = f"SELECT * FROM {self._table} WHERE id = $1"
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(query, job_id),
            operation_name="get",
        )
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        owner_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs with filters and pagination.

        Args:
            status: Filter by status
            owner_id: Filter by owner scope
            subject_id: Filter by subject record
            limit: Max results
            offset: Pagination offset

        Returns:
            Tuple of (jobs list, total count)
        """
        conditions = []
        params: list[Any] = []
        param_idx = 1

        if status:
            conditions.append(f"status = ${param_idx}")
            params.append(JobStatus(status).value)
            param_idx += 1

        if owner_id:
            conditions.append(f"owner_id = ${param_idx}")
            params.append(owner_id)
            param_idx += 1

        if subject_id:
            conditions.append(f"subject_id = ${param_idx}")
            params.append(subject_id)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM {self._table}
            {where_clause}
            ORDER BY updated_at DESC, id
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        count_query = f"SELECT COUNT(*) AS total FROM {self._table} {where_clause}"

        async def _fetch(conn):
            rows = await conn.fetch(query, *params, limit, offset)
            count_row = await conn.fetchrow(count_query, *params)
            return rows, count_row

        rows, count_row = await with_db_retry(
            self._pool, _fetch, operation_name="list_jobs"
        )
        total = count_row["total"] if count_row else 0
        return [self._row_to_job(row) for row in rows], total

    async def stats(self, window_hours: int) -> QueueStats:
        """Counts by status plus average timings of recently completed jobs."""
        query = f"""
            SELECT
                COUNT(*) FILTER (WHERE status = 'queued') AS queued,
                COUNT(*) FILTER (WHERE status = 'processing') AS processing,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                EXTRACT(EPOCH FROM AVG(claimed_at - created_at) FILTER (
                    WHERE status = 'completed'
                      AND completed_at >= now() - make_interval(hours => $1)
                )) AS avg_queue_seconds,
                EXTRACT(EPOCH FROM AVG(completed_at - claimed_at) FILTER (
                    WHERE status = 'completed'
                      AND completed_at >= now() - make_interval(hours => $1)
                )) AS avg_processing_seconds
            FROM {self._table}
        """
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(query, window_hours),
            operation_name="stats",
        )
        return QueueStats(
            queued=row["queued"],
            processing=row["processing"],
            completed=row["completed"],
            failed=row["failed"],
            avg_queue_seconds=_to_float(row["avg_queue_seconds"]),
            avg_processing_seconds=_to_float(row["avg_processing_seconds"]),
            window_hours=window_hours,
        )

    async def reap_stale(self, stale_minutes: int, error: str) -> list[Job]:
        """Fail processing jobs whose worker has not reported back in time."""
        query = f"""
            UPDATE {self._table} SET {_FAIL_TRANSITION}
            WHERE status = 'processing'
              AND claimed_at < now() - make_interval(mins => $1)
            RETURNING *
        """
        rows = await run_once(
            self._pool,
            lambda conn: conn.fetch(query, stale_minutes, error),
            operation_name="reap_stale",
        )
        return [self._row_to_job(row) for row in rows]

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete completed/failed jobs older than cutoff."""
        query = f"""
            DELETE FROM {self._table}
            WHERE status IN ('completed', 'failed')
              AND created_at < $1
            RETURNING id
        """
        rows = await run_once(
            self._pool,
            lambda conn: conn.fetch(query, cutoff),
            operation_name="cleanup",
        )
        return len(rows)

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        options = row["processing_options"]
        if isinstance(options, str):
            options = json.loads(options)
        return Job(
            id=row["id"],
            subject_id=row["subject_id"],
            owner_id=row["owner_id"],
            status=JobStatus(row["status"]),
            priority=JobPriority(row["priority"]),
            processing_options=ProcessingOptions.from_dict(options),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_error=row["last_error"],
            claimed_at=row["claimed_at"],
            claimed_by=row["claimed_by"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _to_float(value) -> Optional[float]:
    return float(value) if value is not None else None
