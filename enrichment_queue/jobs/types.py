"""Job system type definitions."""

from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no automatic transition follows)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(int, Enum):
    """Claim-order hint. Higher values are claimed first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3

    @classmethod
    def parse(cls, value: "str | int | JobPriority") -> "JobPriority":
        """Accept a name ("high"), an ordinal (3) or a member."""
        if isinstance(value, JobPriority):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value!r}") from None
        return cls(value)


class QueueHealth(str, Enum):
    """Coarse queue health derived from failure rate and backlog."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
