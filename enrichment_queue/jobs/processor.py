"""AI processor contract consumed by the enrichment worker.

The queue treats the processor as opaque: it hands over a subject id and
the job's processing options and gets back a result or a ProcessingError.
Processors must be safe to re-run for the same subject, since a job can be
attempted several times; re-running should replace earlier partial results.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
import structlog

from enrichment_queue.config import get_settings
from enrichment_queue.jobs.errors import ProcessingError
from enrichment_queue.jobs.models import ProcessingOptions

logger = structlog.get_logger(__name__)


@dataclass
class EnrichmentResult:
    """Outcome of one enrichment call."""

    success: bool
    passes_run: list[str] = field(default_factory=list)
    error: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class AIProcessor(Protocol):
    """Enrichment collaborator."""

    async def process(
        self, subject_id: str, options: ProcessingOptions
    ) -> EnrichmentResult:
        """Run the enabled enrichment passes for a subject.

        Raises:
            ProcessingError: enrichment failed; ``retryable`` tells whether
                another attempt could succeed
        """
        ...


class HttpAIProcessor:
    """Calls a remote enrichment service over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.processor_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("processor_url is not configured")
        self.api_key = api_key or settings.processor_api_key
        self.timeout = timeout or settings.processor_timeout_s
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    async def process(
        self, subject_id: str, options: ProcessingOptions
    ) -> EnrichmentResult:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await self._client.post(
                f"{self.base_url}/enrich",
                json={"subject_id": subject_id, "options": options.to_dict()},
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProcessingError(f"Enrichment request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProcessingError(f"Enrichment service unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProcessingError(
                f"Enrichment service error {response.status_code}: {_snippet(response)}"
            )
        if response.status_code >= 400:
            raise ProcessingError(
                f"Enrichment rejected {response.status_code}: {_snippet(response)}",
                retryable=False,
            )

        body = response.json()
        result = EnrichmentResult(
            success=bool(body.get("success", True)),
            passes_run=list(body.get("passes_run", options.enabled_passes)),
            error=body.get("error"),
            data=body.get("data") or {},
        )
        logger.debug(
            "enrichment_response",
            subject_id=subject_id,
            success=result.success,
            passes_run=result.passes_run,
        )
        return result

    async def close(self):
        await self._client.aclose()


def _snippet(response: httpx.Response, limit: int = 200) -> str:
    return response.text[:limit]
