"""Mirror of job status onto the enriched record.

The application shows "processing..." / "enrichment failed" from the
record's own processing_status column, so it never has to query the queue.
"""

from typing import Optional

import structlog

from enrichment_queue.core.resilience import run_once
from enrichment_queue.jobs.types import JobStatus

logger = structlog.get_logger(__name__)


class SubjectStatusRepository:
    """Writes processing_status on subject rows."""

    def __init__(
        self,
        pool,
        table: str = "memories",
        column: str = "processing_status",
    ):
        self._pool = pool
        self._table = table
        self._column = column

    async def set_status(self, subject_id: str, status: JobStatus) -> bool:
        """Set the subject's processing status. Returns False if no row matched."""
        query = f"""
            UPDATE {self._table}
            SET {self._column} = $2, updated_at = now()
            WHERE id::text = $1
        """
        result = await run_once(
            self._pool,
            lambda conn: conn.execute(query, subject_id, status.value),
            operation_name="set_subject_status",
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return _affected(result) > 0


class InMemorySubjectStatusRepository:
    """Records statuses in a dict; used by tests and local runs."""

    def __init__(self):
        self.statuses: dict[str, JobStatus] = {}

    async def set_status(self, subject_id: str, status: JobStatus) -> bool:
        self.statuses[subject_id] = status
        return True

    def get(self, subject_id: str) -> Optional[JobStatus]:
        return self.statuses.get(subject_id)


def _affected(command_tag: Optional[str]) -> int:
    if not command_tag:
        return 0
    try:
        return int(command_tag.rsplit(" ", 1)[-1])
    except ValueError:
        return 0
