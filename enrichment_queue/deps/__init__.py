"""FastAPI dependencies for auth."""

from enrichment_queue.deps.security import require_admin_token

__all__ = ["require_admin_token"]
