"""Enrichment Queue - durable job queue for deferred AI enrichment of memories.

Records are enqueued on creation and enriched asynchronously by stateless
workers that claim jobs from Postgres.
"""

__version__ = "0.1.0"
