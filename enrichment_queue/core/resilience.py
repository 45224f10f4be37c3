"""Job store resilience: retry for reads, send-once for writes.

Read-only statements (get, list, stats) are retried on transient
connection failures with capped exponential backoff. Queue mutations are
never re-sent: a claim or insert whose response was lost may already have
been applied, so repeating it could take a second job. Both paths share a
circuit breaker so a database outage fails fast instead of stacking up
waiting workers, and both surface driver errors as ``StoreError``.

Usage:
    row = await with_db_retry(pool, lambda conn: conn.fetchrow(q), operation_name="get")
    row = await run_once(pool, lambda conn: conn.fetchrow(q), operation_name="claim")
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import asyncpg
import structlog

from enrichment_queue.jobs.errors import StoreError

logger = structlog.get_logger(__name__)

Operation = Callable[[asyncpg.Connection], Awaitable[Any]]

# SQLSTATEs worth another try: connection loss, server restarts, and
# transaction conflicts
TRANSIENT_SQLSTATES = frozenset(
    {
        "08000",  # connection_exception
        "08001",  # sqlclient_unable_to_establish_sqlconnection
        "08003",  # connection_does_not_exist
        "08004",  # sqlserver_rejected_establishment_of_sqlconnection
        "08006",  # connection_failure
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
    }
)

STORE_EXCEPTIONS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    asyncpg.InternalClientError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass
class RetryConfig:
    """Backoff policy for read-only statements."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.25


class CircuitBreaker:
    """Consecutive-failure breaker for the job store.

    Opens after ``failure_threshold`` failures in a row and rejects calls
    for ``reset_timeout_s``; after that one probe is let through and its
    outcome closes or re-opens the circuit.
    """

    def __init__(self, failure_threshold: int = 5, reset_timeout_s: float = 30.0):
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self.failures = 0
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def allow(self) -> bool:
        if self._opened_at is None:
            return True
        if time.monotonic() - self._opened_at >= self.reset_timeout_s:
            logger.info("store_circuit_half_open", failures=self.failures)
            return True
        return False

    def record_success(self) -> None:
        if self.failures or self.is_open:
            logger.info("store_circuit_closed", previous_failures=self.failures)
        self.failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            self._opened_at = time.monotonic()
            logger.warning(
                "store_circuit_opened",
                failures=self.failures,
                reset_timeout_s=self.reset_timeout_s,
            )

    def trip(self) -> None:
        """Force the circuit open (tests and manual failover)."""
        self.failures = max(self.failures, self.failure_threshold)
        self._opened_at = time.monotonic()


_db_circuit = CircuitBreaker()


def reset_circuit() -> None:
    """Close the job store circuit (used on pool re-creation and in tests)."""
    _db_circuit.record_success()


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait before retry ``attempt`` (0-indexed), jitter included."""
    base = min(
        config.base_delay_seconds * config.exponential_base**attempt,
        config.max_delay_seconds,
    )
    return base * (1 + config.jitter_factor * random.random())


def is_store_error(error: BaseException) -> bool:
    """Errors raised by the driver or the network rather than our own code."""
    return isinstance(error, STORE_EXCEPTIONS)


def is_transient_db_error(error: BaseException) -> bool:
    """Whether the same statement could succeed if sent again."""
    if isinstance(error, asyncpg.TooManyConnectionsError):
        return True
    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in TRANSIENT_SQLSTATES
    # Query-level problems arrive as PostgresError; anything else from the
    # driver or socket layer means the connection itself is in trouble
    return isinstance(
        error,
        (asyncpg.InterfaceError, asyncpg.InternalClientError, OSError, asyncio.TimeoutError),
    )


def _ensure_circuit_closed(operation_name: str) -> None:
    if not _db_circuit.allow():
        raise StoreError(
            "Job store circuit breaker is open - recovering from outage",
            operation=operation_name,
        )


async def with_db_retry(
    pool: asyncpg.Pool,
    operation: Operation,
    config: Optional[RetryConfig] = None,
    operation_name: str = "query",
) -> Any:
    """Run a read-only statement, retrying transient failures.

    Raises:
        StoreError: circuit open, non-transient driver error, or retries exhausted
    """
    config = config or RetryConfig()
    _ensure_circuit_closed(operation_name)

    for attempt in range(config.max_attempts):
        try:
            async with pool.acquire() as conn:
                result = await operation(conn)
        except Exception as e:
            if not is_store_error(e):
                raise
            if not is_transient_db_error(e):
                logger.warning(
                    "store_query_rejected",
                    operation=operation_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise StoreError(str(e), operation=operation_name) from e

            if attempt == config.max_attempts - 1:
                _db_circuit.record_failure()
                logger.error(
                    "store_retries_exhausted",
                    operation=operation_name,
                    attempts=config.max_attempts,
                    error=str(e),
                )
                raise StoreError(str(e), operation=operation_name) from e

            delay = calculate_backoff(attempt, config)
            logger.warning(
                "store_query_retry",
                operation=operation_name,
                attempt=attempt + 1,
                delay_s=round(delay, 2),
                error_type=type(e).__name__,
            )
            await asyncio.sleep(delay)
        else:
            _db_circuit.record_success()
            return result

    # max_attempts < 1: nothing was sent
    raise StoreError("No attempts configured", operation=operation_name)


async def run_once(
    pool: asyncpg.Pool,
    operation: Operation,
    operation_name: str = "statement",
) -> Any:
    """Send a mutating statement exactly once.

    Transient failures count against the circuit breaker; the caller sees
    a ``StoreError`` either way and must treat the outcome as unknown.
    """
    _ensure_circuit_closed(operation_name)

    try:
        async with pool.acquire() as conn:
            result = await operation(conn)
    except Exception as e:
        if not is_store_error(e):
            raise
        if is_transient_db_error(e):
            _db_circuit.record_failure()
        logger.error(
            "store_statement_failed",
            operation=operation_name,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise StoreError(str(e), operation=operation_name) from e

    _db_circuit.record_success()
    return result
