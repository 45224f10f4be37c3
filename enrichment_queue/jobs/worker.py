"""Enrichment worker - claims jobs and runs them through the AI processor.

``EnrichmentWorker.run_once`` is one invocation of the driver loop and is
what an external trigger (cron, internal endpoint) calls. ``WorkerRunner``
is the long-running alternative that polls instead. Neither keeps job
state between invocations; everything lives in the job store, so any
number of workers can run side by side.
"""

import asyncio
import os
import socket
import time
import traceback
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import structlog

from enrichment_queue.config import get_settings
from enrichment_queue.jobs.errors import JobConflictError, ProcessingError, StoreError
from enrichment_queue.jobs.manager import QueueManager
from enrichment_queue.jobs.models import Job
from enrichment_queue.jobs.processor import AIProcessor
from enrichment_queue.jobs.types import JobStatus
from enrichment_queue.routers import metrics

logger = structlog.get_logger(__name__)

# Outcome statuses
IDLE = "idle"
COMPLETED = "completed"
RETRYING = "retrying"
FAILED = "failed"
CONFLICT = "conflict"


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class WorkerOutcome:
    """What a single worker invocation did."""

    status: str
    job_id: Optional[UUID] = None
    subject_id: Optional[str] = None
    attempts: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def processed(self) -> bool:
        return self.status != IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "job_id": str(self.job_id) if self.job_id else None,
            "subject_id": self.subject_id,
            "attempts": self.attempts,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2) if self.duration_ms else None,
        }


class EnrichmentWorker:
    """Runs one claimed job at a time through the processor."""

    def __init__(
        self,
        manager: QueueManager,
        processor: AIProcessor,
        worker_id: Optional[str] = None,
        job_timeout_s: Optional[float] = None,
    ):
        self._manager = manager
        self._processor = processor
        self._worker_id = worker_id or generate_worker_id()
        self._job_timeout_s = job_timeout_s or get_settings().job_timeout_s

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run_once(self) -> WorkerOutcome:
        """Claim and process at most one job.

        Processor errors become ``fail`` calls. Store errors propagate: the
        job's state is unknown, so the caller should just try again on the
        next invocation.
        """
        job = await self._manager.claim_next(self._worker_id)
        if job is None:
            logger.debug("worker_idle", worker_id=self._worker_id)
            return WorkerOutcome(status=IDLE)

        log = logger.bind(
            job_id=str(job.id), subject_id=job.subject_id, attempt=job.attempts
        )
        log.info("job_executing", passes=job.processing_options.enabled_passes)
        start = time.perf_counter()

        try:
            result = await asyncio.wait_for(
                self._processor.process(job.subject_id, job.processing_options),
                timeout=self._job_timeout_s,
            )
            if not result.success:
                raise ProcessingError(result.error or "Enrichment reported failure")

        except asyncio.CancelledError:
            await self._report_failure(job, "Worker cancelled during processing", start)
            raise

        except asyncio.TimeoutError:
            error = f"Processing timed out after {self._job_timeout_s}s"
            log.error("job_handler_timeout", timeout_s=self._job_timeout_s)
            return await self._report_failure(job, error, start)

        except ProcessingError as e:
            if e.retryable:
                log.warning("job_handler_failed", error=str(e))
            else:
                # Still routed through fail; it surfaces in the dead-letter set
                # once attempts run out
                log.error("job_handler_failed_permanent", error=str(e))
            return await self._report_failure(job, str(e), start)

        except Exception as e:
            log.error(
                "job_handler_failed",
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )
            return await self._report_failure(job, f"{type(e).__name__}: {e}", start)

        duration_ms = _elapsed_ms(start)
        metrics.record_processing_duration("success", duration_ms / 1000)
        try:
            await self._manager.complete(job.id, job.claim)
        except JobConflictError as e:
            log.warning("job_complete_conflict", actual=e.actual)
            return WorkerOutcome(
                status=CONFLICT,
                job_id=job.id,
                subject_id=job.subject_id,
                attempts=job.attempts,
                error=str(e),
                duration_ms=duration_ms,
            )

        log.info("job_succeeded", duration_ms=round(duration_ms, 2))
        return WorkerOutcome(
            status=COMPLETED,
            job_id=job.id,
            subject_id=job.subject_id,
            attempts=job.attempts,
            duration_ms=duration_ms,
        )

    async def run_batch(self, max_jobs: int) -> list[WorkerOutcome]:
        """Process up to ``max_jobs`` jobs, stopping early when the queue is empty."""
        outcomes: list[WorkerOutcome] = []
        for _ in range(max_jobs):
            outcome = await self.run_once()
            if not outcome.processed:
                break
            outcomes.append(outcome)
        return outcomes

    async def _report_failure(
        self, job: Job, error: str, start: float
    ) -> WorkerOutcome:
        duration_ms = _elapsed_ms(start)
        metrics.record_processing_duration("failure", duration_ms / 1000)
        try:
            updated = await self._manager.fail(job.id, error, job.claim)
        except JobConflictError as e:
            logger.warning(
                "job_fail_conflict", job_id=str(job.id), actual=e.actual, error=error
            )
            return WorkerOutcome(
                status=CONFLICT,
                job_id=job.id,
                subject_id=job.subject_id,
                attempts=job.attempts,
                error=error,
                duration_ms=duration_ms,
            )

        return WorkerOutcome(
            status=FAILED if updated.status == JobStatus.FAILED else RETRYING,
            job_id=job.id,
            subject_id=job.subject_id,
            attempts=updated.attempts,
            error=error,
            duration_ms=duration_ms,
        )


class WorkerRunner:
    """Long-running worker that polls the queue and reaps stale claims."""

    def __init__(
        self,
        worker: EnrichmentWorker,
        manager: QueueManager,
        poll_interval_s: Optional[float] = None,
        reap_interval_s: Optional[float] = None,
    ):
        settings = get_settings()
        self._worker = worker
        self._manager = manager
        self._poll_interval_s = poll_interval_s or settings.job_poll_interval_s
        self._reap_interval_s = reap_interval_s or settings.job_reap_interval_s
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the worker loop; returns after stop() or cancellation."""
        self._running = True
        loop = asyncio.get_running_loop()
        last_reap = loop.time()

        logger.info(
            "worker_started",
            worker_id=self._worker.worker_id,
            poll_interval_s=self._poll_interval_s,
        )

        while self._running:
            try:
                outcome = await self._worker.run_once()
                if not outcome.processed:
                    await asyncio.sleep(self._poll_interval_s)

                now = loop.time()
                if now - last_reap >= self._reap_interval_s:
                    await self._manager.reap_stale()
                    last_reap = now

            except asyncio.CancelledError:
                logger.info("worker_cancelled", worker_id=self._worker.worker_id)
                break
            except StoreError as e:
                logger.error(
                    "worker_store_error", error=str(e), operation=e.operation
                )
                await asyncio.sleep(self._poll_interval_s)
            except Exception as e:
                logger.error(
                    "worker_loop_error", error=str(e), traceback=traceback.format_exc()
                )
                await asyncio.sleep(self._poll_interval_s)

        self._running = False
        logger.info("worker_stopped", worker_id=self._worker.worker_id)

    async def stop(self):
        """Stop the worker loop gracefully after the current job."""
        self._running = False


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
