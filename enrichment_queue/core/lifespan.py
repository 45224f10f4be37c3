"""Startup and shutdown wiring: pool, queue manager, processor, worker."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
import structlog
from fastapi import FastAPI

from enrichment_queue import __version__
from enrichment_queue.admin import set_queue_manager, set_worker
from enrichment_queue.config import Settings, get_settings
from enrichment_queue.jobs.manager import QueueManager
from enrichment_queue.jobs.processor import HttpAIProcessor
from enrichment_queue.jobs.worker import EnrichmentWorker
from enrichment_queue.repositories.jobs import JobRepository
from enrichment_queue.repositories.memory import InMemoryJobRepository
from enrichment_queue.repositories.subjects import SubjectStatusRepository

logger = structlog.get_logger(__name__)

# Process-wide handles; health and the CLI read them through the getters
_db_pool: Optional[asyncpg.Pool] = None
_queue_manager: Optional[QueueManager] = None
_processor: Optional[HttpAIProcessor] = None


def get_db_pool() -> Optional[asyncpg.Pool]:
    """Job store pool, or None when running on the in-memory store."""
    return _db_pool


def get_queue_manager() -> Optional[QueueManager]:
    """Queue manager built at startup (None before startup and after shutdown)."""
    return _queue_manager


async def init_database(settings: Settings) -> Optional[asyncpg.Pool]:
    """Create the asyncpg pool, or None if not configured or unreachable.

    Callers must tell the two apart with ``settings.store_configured``: only
    an unconfigured store may fall back to process memory.
    """
    if not settings.store_configured:
        logger.warning("job_store_in_memory", reason="DATABASE_URL not set")
        return None

    try:
        pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            ssl=settings.db_ssl,
            timeout=10,
            command_timeout=30,
            statement_cache_size=0,  # pgbouncer transaction mode
        )
    except Exception as e:
        logger.error(
            "job_store_pool_failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        return None

    logger.info(
        "job_store_pool_ready",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool


def create_queue_manager(
    pool: Optional[asyncpg.Pool], settings: Settings
) -> Optional[QueueManager]:
    """Wire the queue manager to Postgres.

    The in-memory store is used only when no DATABASE_URL is configured. A
    configured store without a pool yields None, so queue routes answer 503
    instead of accepting jobs that would not survive a restart.
    """
    if pool is None:
        if settings.store_configured:
            logger.error(
                "job_store_unavailable",
                reason="configured database unreachable; queue disabled",
            )
            return None
        return QueueManager(InMemoryJobRepository())

    subjects = SubjectStatusRepository(pool) if settings.reflect_subject_status else None
    return QueueManager(JobRepository(pool), subjects=subjects)


def create_processor(settings: Settings) -> Optional[HttpAIProcessor]:
    if not settings.processor_configured:
        logger.warning("worker_disabled", reason="PROCESSOR_URL not set")
        return None
    return HttpAIProcessor()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Wire queue components on startup and release them on shutdown."""
    global _db_pool, _queue_manager, _processor

    settings = get_settings()
    logger.info(
        "service_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
        max_attempts=settings.job_max_attempts,
    )

    _db_pool = await init_database(settings)
    _queue_manager = create_queue_manager(_db_pool, settings)
    set_queue_manager(_queue_manager)

    _processor = create_processor(settings)
    if _processor is not None and _queue_manager is not None:
        set_worker(EnrichmentWorker(_queue_manager, _processor))

    yield

    logger.info("service_stopping")
    set_worker(None)
    set_queue_manager(None)
    _queue_manager = None

    if _processor is not None:
        await _processor.close()
        _processor = None

    if _db_pool is not None:
        await _db_pool.close()
        _db_pool = None
        logger.info("job_store_pool_closed")
