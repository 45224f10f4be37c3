"""Tests for job repository."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import asyncpg
import pytest

from enrichment_queue.jobs.errors import StoreError
from enrichment_queue.jobs.models import Claim, ProcessingOptions
from enrichment_queue.jobs.types import JobPriority, JobStatus
from enrichment_queue.repositories.jobs import JobRepository


def make_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid4(),
        "subject_id": "mem-1",
        "owner_id": "family-1",
        "status": JobStatus.QUEUED.value,
        "priority": int(JobPriority.NORMAL),
        "processing_options": {"generate_embedding": True},
        "attempts": 0,
        "max_attempts": 3,
        "last_error": None,
        "claimed_at": None,
        "claimed_by": None,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def make_pool(conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = conn
    return mock_pool


class TestJobRepository:
    def test_repository_creation(self):
        mock_pool = MagicMock()
        repo = JobRepository(mock_pool)
        assert repo._pool == mock_pool
        assert repo._table == "enrichment_jobs"

    def test_row_to_job_parses_json_string_options(self):
        repo = JobRepository(MagicMock())
        row = make_row(
            processing_options=json.dumps({"analyze_sentiment": False}),
            priority=3,
        )

        job = repo._row_to_job(row)

        assert job.priority == JobPriority.HIGH
        assert job.processing_options.analyze_sentiment is False
        assert job.processing_options.generate_insights is True


class TestInsert:
    @pytest.mark.asyncio
    async def test_insert_serializes_options(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=make_row())
        repo = JobRepository(make_pool(mock_conn))
        options = ProcessingOptions(generate_insights=False)

        job = await repo.insert(
            subject_id="mem-1",
            owner_id="family-1",
            priority=JobPriority.HIGH,
            options=options,
            max_attempts=5,
        )

        assert job.status == JobStatus.QUEUED
        args = mock_conn.fetchrow.call_args[0]
        assert "INSERT INTO enrichment_jobs" in args[0]
        assert args[1:4] == ("mem-1", "family-1", 3)
        assert json.loads(args[4]) == options.to_dict()
        assert args[5] == 5

    @pytest.mark.asyncio
    async def test_insert_driver_error_becomes_store_error(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            side_effect=asyncpg.exceptions.UndefinedTableError("missing table")
        )
        repo = JobRepository(make_pool(mock_conn))

        with pytest.raises(StoreError) as exc_info:
            await repo.insert("mem-1", None, JobPriority.NORMAL, ProcessingOptions(), 3)

        assert exc_info.value.operation == "insert"


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_returns_processing_job(self):
        claimed_at = datetime.now(timezone.utc)
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            return_value=make_row(
                status="processing",
                attempts=1,
                claimed_at=claimed_at,
                claimed_by="host:1",
            )
        )
        repo = JobRepository(make_pool(mock_conn))

        job = await repo.claim("host:1")

        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1
        assert job.claimed_by == "host:1"
        query, worker_id = mock_conn.fetchrow.call_args[0]
        assert "FOR UPDATE SKIP LOCKED" in query
        assert "ORDER BY priority DESC, created_at ASC" in query
        assert worker_id == "host:1"

    @pytest.mark.asyncio
    async def test_claim_empty_queue(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo = JobRepository(make_pool(mock_conn))

        assert await repo.claim("host:1") is None

    @pytest.mark.asyncio
    async def test_claim_not_retried_on_connection_loss(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=ConnectionResetError("reset"))
        repo = JobRepository(make_pool(mock_conn))

        with pytest.raises(StoreError):
            await repo.claim("host:1")

        assert mock_conn.fetchrow.await_count == 1


class TestTransitions:
    @pytest.mark.asyncio
    async def test_mark_completed_guards_on_claim(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            return_value=make_row(
                status="completed", completed_at=datetime.now(timezone.utc)
            )
        )
        repo = JobRepository(make_pool(mock_conn))
        job_id = uuid4()

        job = await repo.mark_completed(job_id, Claim("host:1", 2))

        assert job.status == JobStatus.COMPLETED
        query, passed_id, worker_id, attempt = mock_conn.fetchrow.call_args[0]
        assert "status = 'processing'" in query
        assert "claimed_by = $2 AND attempts = $3" in query
        assert passed_id == job_id
        assert (worker_id, attempt) == ("host:1", 2)

    @pytest.mark.asyncio
    async def test_mark_completed_wrong_state(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)
        repo = JobRepository(make_pool(mock_conn))

        assert await repo.mark_completed(uuid4(), Claim("host:1", 1)) is None

    @pytest.mark.asyncio
    async def test_record_failure_uses_attempt_ceiling(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            return_value=make_row(status="failed", attempts=3, last_error="boom")
        )
        repo = JobRepository(make_pool(mock_conn))
        job_id = uuid4()

        job = await repo.record_failure(job_id, "boom", Claim("host:1", 3))

        assert job.status == JobStatus.FAILED
        query, passed_id, error, worker_id, attempt = mock_conn.fetchrow.call_args[0]
        assert "attempts >= max_attempts" in query
        assert "claimed_by = $3 AND attempts = $4" in query
        assert passed_id == job_id
        assert error == "boom"
        assert (worker_id, attempt) == ("host:1", 3)

    @pytest.mark.asyncio
    async def test_reset_failed_zeroes_attempts(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=make_row(last_error="boom"))
        repo = JobRepository(make_pool(mock_conn))

        job = await repo.reset_failed(uuid4())

        assert job.status == JobStatus.QUEUED
        query = mock_conn.fetchrow.call_args[0][0]
        assert "attempts = 0" in query
        assert "status = 'failed'" in query


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_job(self):
        row = make_row()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=row)
        repo = JobRepository(make_pool(mock_conn))

        job = await repo.get(row["id"])

        assert job.id == row["id"]

    @pytest.mark.asyncio
    async def test_get_retries_transient_error(self, monkeypatch):
        monkeypatch.setattr(
            "enrichment_queue.core.resilience.asyncio.sleep", AsyncMock()
        )
        row = make_row()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=[ConnectionResetError(), row])
        repo = JobRepository(make_pool(mock_conn))

        job = await repo.get(row["id"])

        assert job.id == row["id"]
        assert mock_conn.fetchrow.await_count == 2

    @pytest.mark.asyncio
    async def test_list_jobs_with_filters(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[make_row(status="failed")])
        mock_conn.fetchrow = AsyncMock(return_value={"total": 7})
        repo = JobRepository(make_pool(mock_conn))

        jobs, total = await repo.list_jobs(
            status=JobStatus.FAILED, owner_id="family-1", limit=10, offset=20
        )

        assert total == 7
        assert jobs[0].status == JobStatus.FAILED
        args = mock_conn.fetch.call_args[0]
        assert "status = $1" in args[0]
        assert "owner_id = $2" in args[0]
        assert "LIMIT $3 OFFSET $4" in args[0]
        assert args[1:] == ("failed", "family-1", 10, 20)

    @pytest.mark.asyncio
    async def test_stats(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(
            return_value={
                "queued": 4,
                "processing": 1,
                "completed": 10,
                "failed": 2,
                "avg_queue_seconds": 12.5,
                "avg_processing_seconds": None,
            }
        )
        repo = JobRepository(make_pool(mock_conn))

        stats = await repo.stats(window_hours=6)

        assert stats.total == 17
        assert stats.avg_queue_seconds == 12.5
        assert stats.avg_processing_seconds is None
        assert stats.window_hours == 6
        assert mock_conn.fetchrow.call_args[0][1] == 6

    @pytest.mark.asyncio
    async def test_reap_stale(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(
            return_value=[make_row(attempts=1, last_error="stale claim timeout")]
        )
        repo = JobRepository(make_pool(mock_conn))

        reaped = await repo.reap_stale(30, "stale claim timeout")

        assert len(reaped) == 1
        query, minutes, error = mock_conn.fetch.call_args[0]
        assert "make_interval(mins => $1)" in query
        assert minutes == 30
        assert error == "stale claim timeout"

    @pytest.mark.asyncio
    async def test_delete_terminal_before(self):
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[{"id": uuid4()}, {"id": uuid4()}])
        repo = JobRepository(make_pool(mock_conn))
        cutoff = datetime.now(timezone.utc) - timedelta(days=30)

        assert await repo.delete_terminal_before(cutoff) == 2
        assert mock_conn.fetch.call_args[0][1] == cutoff
