"""Internal queue administration package."""

from enrichment_queue.admin.queue import router, set_queue_manager, set_worker

__all__ = ["router", "set_queue_manager", "set_worker"]
