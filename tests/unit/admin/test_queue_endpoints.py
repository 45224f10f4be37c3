"""Tests for queue admin endpoints (enqueue, worker trigger, stats, remediation)."""

import os
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from enrichment_queue.config import get_settings
from enrichment_queue.jobs.errors import ProcessingError, StoreError
from enrichment_queue.jobs.manager import QueueManager
from enrichment_queue.jobs.processor import EnrichmentResult
from enrichment_queue.jobs.types import JobStatus
from enrichment_queue.jobs.worker import EnrichmentWorker
from enrichment_queue.repositories.memory import InMemoryJobRepository

# Set required environment variables for tests before importing app
os.environ.setdefault("ADMIN_TOKEN", "test-token")

HEADERS = {"X-Admin-Token": "test-token"}


class ScriptedProcessor:
    """Fails for subjects listed in ``failing``, succeeds otherwise."""

    def __init__(self, failing=()):
        self.failing = set(failing)

    async def process(self, subject_id, options):
        if subject_id in self.failing:
            raise ProcessingError(f"cannot enrich {subject_id}")
        return EnrichmentResult(success=True)


@pytest.fixture
def client():
    """Create test client."""
    from enrichment_queue.main import app

    return TestClient(app)


@pytest.fixture
def manager():
    return QueueManager(InMemoryJobRepository(), max_attempts=1)


@pytest.fixture
def wired(manager):
    """Patch the router globals with an in-memory manager and worker."""
    worker = EnrichmentWorker(
        manager, ScriptedProcessor(failing={"bad"}), worker_id="test-worker"
    )
    with patch("enrichment_queue.admin.queue._queue_manager", manager), patch(
        "enrichment_queue.admin.queue._worker", worker
    ):
        yield manager


class TestAuth:
    def test_requires_admin_token(self, client, wired):
        response = client.get("/queue/stats")
        assert response.status_code == 401

    def test_rejects_wrong_token(self, client, wired):
        response = client.get("/queue/stats", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 403

    def test_scheduler_api_key_header_accepted(self, client, wired):
        response = client.get("/queue/stats", headers={"X-API-Key": "test-token"})
        assert response.status_code == 200

    def test_unconfigured_token_forbidden(self, client, wired):
        with patch.dict(os.environ, {"ADMIN_TOKEN": ""}):
            get_settings.cache_clear()
            response = client.get("/queue/stats", headers=HEADERS)
        assert response.status_code == 403


class TestEnqueueEndpoint:
    def test_enqueue(self, client, wired):
        response = client.post(
            "/queue/enqueue",
            json={
                "subject_id": "mem-1",
                "owner_id": "family-1",
                "priority": "high",
                "processing_options": {"analyze_sentiment": False},
            },
            headers=HEADERS,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "queued"

        detail = client.get(f"/queue/jobs/{data['job_id']}", headers=HEADERS).json()
        assert detail["priority"] == "high"
        assert detail["owner_id"] == "family-1"
        assert detail["processing_options"]["analyze_sentiment"] is False
        assert detail["processing_options"]["generate_embedding"] is True

    def test_enqueue_rejects_bad_priority(self, client, wired):
        response = client.post(
            "/queue/enqueue",
            json={"subject_id": "mem-1", "priority": "urgent"},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_enqueue_rejects_blank_subject(self, client, wired):
        response = client.post(
            "/queue/enqueue", json={"subject_id": "   "}, headers=HEADERS
        )
        assert response.status_code == 422

    def test_enqueue_store_unavailable(self, client):
        manager = MagicMock()
        manager.enqueue = AsyncMock(side_effect=StoreError("down", operation="insert"))
        with patch("enrichment_queue.admin.queue._queue_manager", manager):
            response = client.post(
                "/queue/enqueue", json={"subject_id": "mem-1"}, headers=HEADERS
            )
        assert response.status_code == 503

    def test_manager_not_initialized(self, client):
        with patch("enrichment_queue.admin.queue._queue_manager", None):
            response = client.get("/queue/stats", headers=HEADERS)
        assert response.status_code == 503


class TestProcessEndpoint:
    def test_idle_queue(self, client, wired):
        response = client.post("/queue/process", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"processed": 0, "idle": True, "jobs": []}

    def test_processes_batch(self, client, wired):
        for subject in ("good", "bad"):
            client.post("/queue/enqueue", json={"subject_id": subject}, headers=HEADERS)

        response = client.post("/queue/process?max_jobs=5", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 2
        assert data["idle"] is True
        statuses = {job["subject_id"]: job["status"] for job in data["jobs"]}
        assert statuses == {"good": "completed", "bad": "failed"}

    def test_worker_not_configured(self, client, wired):
        with patch("enrichment_queue.admin.queue._worker", None):
            response = client.post("/queue/process", headers=HEADERS)
        assert response.status_code == 503

    def test_store_error_is_503(self, client, wired):
        worker = MagicMock()
        worker.run_batch = AsyncMock(side_effect=StoreError("down", operation="claim"))
        with patch("enrichment_queue.admin.queue._worker", worker):
            response = client.post("/queue/process", headers=HEADERS)
        assert response.status_code == 503


class TestStatsAndListing:
    def test_stats(self, client, wired):
        client.post("/queue/enqueue", json={"subject_id": "a"}, headers=HEADERS)

        response = client.get("/queue/stats", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["queued"] == 1
        assert data["total"] == 1
        assert data["health"] == "healthy"

    def test_list_jobs_with_status_filter(self, client, wired):
        for subject in ("good", "bad"):
            client.post("/queue/enqueue", json={"subject_id": subject}, headers=HEADERS)
        client.post("/queue/process?max_jobs=5", headers=HEADERS)

        response = client.get("/queue/jobs?status=failed", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["subject_id"] == "bad"
        assert data["limit"] == 50
        assert data["offset"] == 0

    def test_get_missing_job(self, client, wired):
        response = client.get(f"/queue/jobs/{uuid4()}", headers=HEADERS)
        assert response.status_code == 404


class TestRemediation:
    def _fail_one(self, client):
        client.post("/queue/enqueue", json={"subject_id": "bad"}, headers=HEADERS)
        client.post("/queue/process", headers=HEADERS)
        failed = client.get("/queue/failed", headers=HEADERS).json()
        return failed["items"][0]["id"]

    def test_failed_listing(self, client, wired):
        job_id = self._fail_one(client)

        data = client.get("/queue/failed", headers=HEADERS).json()

        assert data["count"] == 1
        assert data["items"][0]["id"] == job_id
        assert data["items"][0]["last_error"] == "cannot enrich bad"

    def test_retry_single_job(self, client, wired):
        job_id = self._fail_one(client)

        response = client.post(f"/queue/jobs/{job_id}/retry", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["status"] == "queued"
        job = client.get(f"/queue/jobs/{job_id}", headers=HEADERS).json()
        assert job["status"] == JobStatus.QUEUED.value
        assert job["attempts"] == 0
        assert job["last_error"] == "cannot enrich bad"

    def test_retry_non_failed_conflicts(self, client, wired):
        job_id = client.post(
            "/queue/enqueue", json={"subject_id": "a"}, headers=HEADERS
        ).json()["job_id"]

        response = client.post(f"/queue/jobs/{job_id}/retry", headers=HEADERS)

        assert response.status_code == 409

    def test_retry_missing_job(self, client, wired):
        response = client.post(f"/queue/jobs/{uuid4()}/retry", headers=HEADERS)
        assert response.status_code == 404

    def test_bulk_retry(self, client, wired):
        self._fail_one(client)
        self._fail_one(client)

        response = client.post("/queue/failed/retry", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["retried_count"] == 2
        assert client.get("/queue/failed", headers=HEADERS).json()["count"] == 0

    def test_reap(self, client, wired):
        response = client.post("/queue/reap?timeout_minutes=5", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"reaped": 0}

    def test_cleanup(self, client, wired):
        response = client.post("/queue/cleanup?older_than_days=7", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"deleted": 0, "older_than_days": 7}

    def test_cleanup_rejects_zero_days(self, client, wired):
        response = client.post("/queue/cleanup?older_than_days=0", headers=HEADERS)
        assert response.status_code == 422
