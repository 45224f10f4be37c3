"""Job system data models."""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from enrichment_queue.jobs.types import JobPriority, JobStatus, QueueHealth


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProcessingOptions:
    """Which enrichment passes to run for a subject.

    Passed through unmodified to the AI processor.
    """

    generate_embedding: bool = True
    detect_milestones: bool = True
    analyze_sentiment: bool = True
    generate_insights: bool = True

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ProcessingOptions":
        """Build options from a stored JSON object, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        # Only a real JSON true enables a pass; "false" strings stay off
        return cls(**{k: v is True for k, v in data.items() if k in known})

    @property
    def enabled_passes(self) -> list[str]:
        return [name for name, enabled in self.to_dict().items() if enabled]


@dataclass(frozen=True)
class Claim:
    """Lease held by the worker that claimed a job.

    Every worker task in one process shares a worker id, so the attempt
    number is what tells one claim of a job apart from the next.
    """

    worker_id: str
    attempt: int


@dataclass
class Job:
    """A unit of deferred enrichment work tied to a subject record."""

    id: UUID
    subject_id: str
    status: JobStatus
    owner_id: Optional[str] = None
    priority: JobPriority = JobPriority.NORMAL
    processing_options: ProcessingOptions = field(default_factory=ProcessingOptions)

    # Retry handling
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None

    # Claim info
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None

    # Lifecycle timestamps
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        """Completed, or failed with no attempts left."""
        if self.status == JobStatus.COMPLETED:
            return True
        return self.status == JobStatus.FAILED and self.attempts >= self.max_attempts

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def claim(self) -> Optional[Claim]:
        """Lease of the current or most recent claim."""
        if self.claimed_by is None:
            return None
        return Claim(worker_id=self.claimed_by, attempt=self.attempts)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation."""
        return {
            "id": str(self.id),
            "subject_id": self.subject_id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "priority": self.priority.name.lower(),
            "processing_options": self.processing_options.to_dict(),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "claimed_at": _iso(self.claimed_at),
            "claimed_by": self.claimed_by,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class QueueStats:
    """Aggregate queue counts and recent timings."""

    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    avg_queue_seconds: Optional[float] = None
    avg_processing_seconds: Optional[float] = None
    window_hours: int = 24

    # Failure rate / backlog thresholds for health classification
    CRITICAL_FAILURE_RATE = 0.2
    DEGRADED_FAILURE_RATE = 0.1
    CRITICAL_BACKLOG = 100
    DEGRADED_BACKLOG = 50

    @property
    def total(self) -> int:
        return self.queued + self.processing + self.completed + self.failed

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0

    @property
    def health(self) -> QueueHealth:
        rate = self.failure_rate
        if rate > self.CRITICAL_FAILURE_RATE or self.queued > self.CRITICAL_BACKLOG:
            return QueueHealth.CRITICAL
        if rate > self.DEGRADED_FAILURE_RATE or self.queued > self.DEGRADED_BACKLOG:
            return QueueHealth.DEGRADED
        return QueueHealth.HEALTHY

    def count_for(self, status: JobStatus) -> int:
        return getattr(self, status.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queued": self.queued,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
            "avg_queue_seconds": self.avg_queue_seconds,
            "avg_processing_seconds": self.avg_processing_seconds,
            "window_hours": self.window_hours,
            "failure_rate": round(self.failure_rate, 4),
            "health": self.health.value,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
