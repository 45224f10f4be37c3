"""Prometheus metrics endpoint for the enrichment queue."""

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter()

# Lifecycle counters
JOBS_ENQUEUED = Counter(
    "enrichment_jobs_enqueued_total",
    "Total number of jobs enqueued",
    ["priority"],
)

JOBS_CLAIMED = Counter(
    "enrichment_jobs_claimed_total",
    "Total number of job claims",
)

JOBS_COMPLETED = Counter(
    "enrichment_jobs_completed_total",
    "Total number of jobs completed",
)

JOBS_FAILED = Counter(
    "enrichment_jobs_failed_total",
    "Total number of failed attempts",
    ["terminal"],  # "true" when attempts are exhausted
)

JOBS_RETRIED = Counter(
    "enrichment_jobs_retried_total",
    "Total number of failed jobs manually re-queued",
)

JOBS_REAPED = Counter(
    "enrichment_jobs_reaped_total",
    "Total number of stale processing claims reaped",
)

PROCESSING_DURATION = Histogram(
    "enrichment_job_processing_seconds",
    "Processor call duration per job attempt",
    ["outcome"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

# Queue depth (refreshed whenever stats are read)
QUEUE_DEPTH = Gauge(
    "enrichment_queue_jobs",
    "Jobs currently in each status",
    ["status"],
)


def record_enqueued(priority: str):
    """Record an enqueue."""
    JOBS_ENQUEUED.labels(priority=priority).inc()


def record_claimed():
    JOBS_CLAIMED.inc()


def record_completed():
    JOBS_COMPLETED.inc()


def record_failed(terminal: bool):
    """Record a failed attempt."""
    JOBS_FAILED.labels(terminal="true" if terminal else "false").inc()


def record_retried(count: int = 1):
    JOBS_RETRIED.inc(count)


def record_reaped(count: int):
    if count > 0:
        JOBS_REAPED.inc(count)


def record_processing_duration(outcome: str, seconds: float):
    PROCESSING_DURATION.labels(outcome=outcome).observe(seconds)


def set_queue_depth(counts: dict[str, int]):
    """Set queue depth gauges from a status -> count mapping."""
    for status, count in counts.items():
        QUEUE_DEPTH.labels(status=status).set(count)


@router.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus scrape target. Queue gauges reflect the last stats() call."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
