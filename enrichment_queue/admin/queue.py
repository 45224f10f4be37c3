"""Queue admin endpoints (worker trigger, stats, dead-letter remediation).

All routes are internal and require the admin token.
"""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from enrichment_queue.deps.security import require_admin_token
from enrichment_queue.jobs.errors import (
    InvalidJobError,
    JobNotFoundError,
    StoreError,
)
from enrichment_queue.jobs.models import ProcessingOptions
from enrichment_queue.jobs.types import JobStatus

router = APIRouter(prefix="/queue", tags=["queue"])
logger = structlog.get_logger(__name__)

# Set during app startup
_queue_manager = None
_worker = None

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


def set_queue_manager(manager):
    """Set the queue manager for queue routes."""
    global _queue_manager
    _queue_manager = manager


def set_worker(worker):
    """Set the enrichment worker used by the process trigger."""
    global _worker
    _worker = worker


def _get_manager():
    if _queue_manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job store not available",
        )
    return _queue_manager


def _store_unavailable(e: StoreError) -> HTTPException:
    logger.error("queue_store_error", operation=e.operation, error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Job store error during {e.operation or 'operation'}",
    )


class ProcessingOptionsModel(BaseModel):
    """Which enrichment passes to run."""

    generate_embedding: bool = True
    detect_milestones: bool = True
    analyze_sentiment: bool = True
    generate_insights: bool = True


class EnqueueRequest(BaseModel):
    """Request body for enqueuing a subject for enrichment."""

    subject_id: str = Field(..., min_length=1, description="Record to enrich")
    owner_id: Optional[str] = Field(
        default=None, description="Owner scope (e.g. family) for metrics"
    )
    priority: str = Field(default="normal", pattern="^(low|normal|high)$")
    processing_options: ProcessingOptionsModel = Field(
        default_factory=ProcessingOptionsModel
    )
    max_attempts: Optional[int] = Field(default=None, ge=1, le=20)


@router.post("/enqueue", status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    request: EnqueueRequest,
    _: bool = Depends(require_admin_token),
):
    """Enqueue a subject for enrichment."""
    manager = _get_manager()
    try:
        job_id = await manager.enqueue(
            subject_id=request.subject_id,
            owner_id=request.owner_id,
            options=ProcessingOptions(**request.processing_options.model_dump()),
            priority=request.priority,
            max_attempts=request.max_attempts,
        )
    except InvalidJobError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )
    except StoreError as e:
        raise _store_unavailable(e)

    return {"job_id": str(job_id), "status": JobStatus.QUEUED.value}


@router.post("/process")
async def process_queue(
    max_jobs: int = Query(1, ge=1, le=100, description="Jobs to drain this call"),
    _: bool = Depends(require_admin_token),
):
    """
    Run one worker invocation.

    Called by the external scheduler. Processes up to ``max_jobs`` jobs and
    returns what happened to each; an empty list means the queue was idle.

    Returns:
        200: Invocation finished (including idle and failed jobs)
        503: Job store unavailable - try again next trigger
    """
    if _worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Worker not configured",
        )
    try:
        outcomes = await _worker.run_batch(max_jobs)
    except StoreError as e:
        raise _store_unavailable(e)

    return {
        "processed": len(outcomes),
        "idle": len(outcomes) < max_jobs,
        "jobs": [o.to_dict() for o in outcomes],
    }


@router.get("/stats")
async def queue_stats(
    window_hours: Optional[int] = Query(
        None, ge=1, le=24 * 30, description="Window for average timings"
    ),
    _: bool = Depends(require_admin_token),
):
    """Counts by status, recent average timings and queue health."""
    manager = _get_manager()
    try:
        stats = await manager.stats(window_hours)
    except StoreError as e:
        raise _store_unavailable(e)
    return stats.to_dict()


@router.get("/jobs")
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    owner_id: Optional[str] = Query(None),
    subject_id: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
    _: bool = Depends(require_admin_token),
):
    """List jobs with filters, most recently updated first."""
    manager = _get_manager()
    try:
        jobs, total = await manager.list_jobs(
            status=status_filter,
            owner_id=owner_id,
            subject_id=subject_id,
            limit=limit,
            offset=offset,
        )
    except StoreError as e:
        raise _store_unavailable(e)

    return {
        "items": [job.to_dict() for job in jobs],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: UUID,
    _: bool = Depends(require_admin_token),
):
    """Get a single job."""
    manager = _get_manager()
    try:
        job = await manager.get_job(job_id)
    except StoreError as e:
        raise _store_unavailable(e)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return job.to_dict()


@router.post("/jobs/{job_id}/retry")
async def retry_job(
    job_id: UUID,
    _: bool = Depends(require_admin_token),
):
    """
    Re-queue a failed job with a fresh attempt budget.

    Returns:
        200: Job re-queued
        404: Job not found
        409: Job is not in failed state
    """
    manager = _get_manager()
    try:
        retried = await manager.retry_failed_job(job_id)
        if not retried:
            job = await manager.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Job is {job.status.value}, only failed jobs can be retried",
            )
    except JobNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    except StoreError as e:
        raise _store_unavailable(e)

    return {"job_id": str(job_id), "status": JobStatus.QUEUED.value}


@router.get("/failed")
async def list_failed_jobs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0),
    _: bool = Depends(require_admin_token),
):
    """Dead-letter set for triage and bulk retry."""
    manager = _get_manager()
    try:
        jobs = await manager.list_failed_jobs(limit=limit, offset=offset)
    except StoreError as e:
        raise _store_unavailable(e)
    return {"items": [job.to_dict() for job in jobs], "count": len(jobs)}


@router.post("/failed/retry")
async def retry_failed_jobs(
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    _: bool = Depends(require_admin_token),
):
    """Re-queue up to ``limit`` failed jobs."""
    manager = _get_manager()
    try:
        retried = await manager.retry_all_failed(limit=limit)
    except StoreError as e:
        raise _store_unavailable(e)

    logger.info("bulk_retry_triggered", retried=retried, limit=limit)
    return {"message": f"Retried {retried} failed jobs", "retried_count": retried}


@router.post("/reap")
async def reap_stale_jobs(
    timeout_minutes: Optional[int] = Query(
        None, ge=1, description="Claim age threshold (defaults to settings)"
    ),
    _: bool = Depends(require_admin_token),
):
    """Fail processing jobs whose worker never reported back."""
    manager = _get_manager()
    try:
        reaped = await manager.reap_stale(timeout_minutes)
    except StoreError as e:
        raise _store_unavailable(e)
    return {"reaped": reaped}


@router.post("/cleanup")
async def cleanup_jobs(
    older_than_days: int = Query(30, ge=1, description="Retention in days"),
    _: bool = Depends(require_admin_token),
):
    """Delete completed/failed jobs older than the retention window."""
    manager = _get_manager()
    try:
        deleted = await manager.cleanup_old_jobs(older_than_days)
    except StoreError as e:
        raise _store_unavailable(e)
    return {"deleted": deleted, "older_than_days": older_than_days}
