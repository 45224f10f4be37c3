"""Authentication for the internal queue API.

Two kinds of callers hit the queue routes: the scheduler that triggers
worker invocations, and operators doing dead-letter remediation. Both
present the shared internal token, either as ``X-Admin-Token`` or as the
scheduler's ``X-API-Key`` header.
"""

import hmac
from typing import Optional

import structlog
from fastapi import HTTPException, Request, status

from enrichment_queue.config import get_settings

logger = structlog.get_logger(__name__)

TOKEN_HEADERS = ("X-Admin-Token", "X-API-Key")


def _presented_token(request: Request) -> Optional[str]:
    for header in TOKEN_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    return None


def require_admin_token(request: Request) -> bool:
    """
    FastAPI dependency guarding every ``/queue`` route.

    Returns 401 when no token is presented and 403 when it does not match
    (or when ADMIN_TOKEN is not configured at all, so an unconfigured
    deployment fails closed). Tokens are compared in constant time.
    """
    expected = get_settings().admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Queue API disabled: ADMIN_TOKEN not configured",
        )

    presented = _presented_token(request)
    if presented is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Internal token required (X-Admin-Token or X-API-Key)",
        )

    if not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning(
            "queue_auth_rejected",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal token",
        )

    return True
