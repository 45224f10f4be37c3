"""Liveness probe backed by a queue stats read."""

import time
from typing import Any, Optional

import structlog
from fastapi import APIRouter
from pydantic import BaseModel, Field

from enrichment_queue import __version__
from enrichment_queue.core import lifespan

router = APIRouter()
logger = structlog.get_logger(__name__)


class DependencyHealth(BaseModel):
    """Reachability of one backing service."""

    status: str = Field(..., description="Dependency status (ok/error)")
    latency_ms: Optional[float] = Field(None, description="Response latency in ms")
    error: Optional[str] = Field(None, description="Error message if unhealthy")


class HealthResponse(BaseModel):
    """Body of /health."""

    status: str = Field(..., description="Overall service status")
    job_store: DependencyHealth = Field(..., description="Job store health")
    queue: dict[str, Any] = Field(default_factory=dict, description="Queue stats")
    version: str = Field(..., description="Service version")


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Check the job store and report queue health.

    Reads stats only; never claims or locks jobs.
    """
    manager = lifespan.get_queue_manager()
    if manager is None:
        return HealthResponse(
            status="degraded",
            job_store=DependencyHealth(status="error", error="Not initialized"),
            version=__version__,
        )

    start = time.perf_counter()
    try:
        stats = await manager.stats()
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        logger.warning("health_check_store_error", error=str(e))
        return HealthResponse(
            status="degraded",
            job_store=DependencyHealth(status="error", latency_ms=latency, error=str(e)),
            version=__version__,
        )

    latency = (time.perf_counter() - start) * 1000
    queue = stats.to_dict()
    return HealthResponse(
        status="ok" if queue["health"] != "critical" else "degraded",
        job_store=DependencyHealth(status="ok", latency_ms=latency),
        queue=queue,
        version=__version__,
    )
