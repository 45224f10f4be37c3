"""Sentry error tracking for the queue service.

Only genuine server faults should page anyone. Caller mistakes (4xx
responses, wrong-state transitions, rejected enqueues) are dropped before
they leave the process.
"""

import os
from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from enrichment_queue import __version__
from enrichment_queue.config import Settings
from enrichment_queue.jobs.errors import InvalidJobError, JobConflictError

logger = structlog.get_logger(__name__)

# Raised on bad input or lost races; expected in normal operation
EXPECTED_ERRORS = (InvalidJobError, JobConflictError)

SERVICE_TAG = "enrichment-queue"


def _is_client_error(status_code: Optional[int]) -> bool:
    return status_code is not None and 400 <= status_code < 500


def _before_send(event: dict, hint: dict) -> Optional[dict]:
    """Drop client errors and expected queue errors; keep everything else."""
    exc_info = hint.get("exc_info")
    if exc_info:
        exc_value = exc_info[1]
        if isinstance(exc_value, EXPECTED_ERRORS):
            return None
        if _is_client_error(getattr(exc_value, "status_code", None)):
            return None

    response = event.get("contexts", {}).get("response", {})
    if _is_client_error(response.get("status_code")):
        return None

    return event


def _traces_sampler(settings: Settings):
    rate = settings.sentry_traces_sample_rate

    def traces_sampler(sampling_context: dict) -> float:
        parent = sampling_context.get("parent_sampled")
        if parent is not None:
            return float(parent)

        # The worker trigger fires every few seconds from cron
        name = sampling_context.get("transaction_context", {}).get("name", "")
        if "process" in name:
            return rate / 10
        return rate

    return traces_sampler


def init_sentry(settings: Settings) -> bool:
    """Initialize Sentry when a DSN is configured. Returns whether it did."""
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        release=os.environ.get("GIT_SHA", f"{SERVICE_TAG}@{__version__}"),
        integrations=[
            # Only ERROR-level log records become events
            LoggingIntegration(level=None, event_level="ERROR"),
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sampler=_traces_sampler(settings),
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=_before_send,
    )
    sentry_sdk.set_tag("service", SERVICE_TAG)

    logger.info(
        "sentry_initialized",
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True
