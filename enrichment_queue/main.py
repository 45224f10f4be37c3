"""Enrichment Queue - FastAPI application.

Serves the internal queue API (worker trigger, stats, remediation) plus
health and Prometheus endpoints. Run with:

    uvicorn enrichment_queue.main:app
"""

import logging
import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from enrichment_queue import __version__
from enrichment_queue.admin import router as queue_router
from enrichment_queue.config import get_settings
from enrichment_queue.core.lifespan import lifespan
from enrichment_queue.core.sentry import init_sentry
from enrichment_queue.jobs.errors import StoreError
from enrichment_queue.routers import health, metrics

# Probes hit these constantly; keep them out of info-level request logs
QUIET_PATHS = {"/health", "/metrics"}


def configure_logging(level: str) -> None:
    """JSON logs through stdlib logging so Sentry sees ERROR records."""
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings.log_level)
init_sentry(settings)

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Enrichment Queue",
    description="Durable job queue for asynchronous AI enrichment of memories",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(metrics.router)
app.include_router(queue_router)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    """Store outages are retryable from the caller's side."""
    logger.error("store_unavailable", operation=exc.operation, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "Job store unavailable", "retryable": True},
    )


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    """Bind a request id to every log line and time the request."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("request_failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    log = logger.debug if request.url.path in QUIET_PATHS else logger.info
    log("request_completed", status_code=response.status_code, duration_ms=duration_ms)
    return response


@app.get("/")
async def root():
    """Service banner."""
    return {"service": "enrichment-queue", "version": __version__}
