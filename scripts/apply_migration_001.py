#!/usr/bin/env python3
"""Apply migration 001: enrichment_jobs table."""
import asyncio
import asyncpg
import os

MIGRATION = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS enrichment_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    subject_id TEXT NOT NULL,
    owner_id TEXT,
    status TEXT NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'processing', 'completed', 'failed')),
    priority SMALLINT NOT NULL DEFAULT 2 CHECK (priority BETWEEN 1 AND 3),
    processing_options JSONB NOT NULL DEFAULT '{}',
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    max_attempts INTEGER NOT NULL DEFAULT 3 CHECK (max_attempts > 0),
    last_error TEXT,
    claimed_at TIMESTAMPTZ,
    claimed_by TEXT,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT enrichment_jobs_options_obj
        CHECK (jsonb_typeof(processing_options) = 'object'),
    CONSTRAINT enrichment_jobs_claim_pair
        CHECK ((claimed_at IS NULL) = (claimed_by IS NULL)),
    CONSTRAINT enrichment_jobs_processing_claimed
        CHECK (status <> 'processing' OR claimed_at IS NOT NULL),
    CONSTRAINT enrichment_jobs_completed_ts
        CHECK (status <> 'completed' OR completed_at IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_enrichment_jobs_claim
    ON enrichment_jobs(status, priority DESC, created_at)
    WHERE status = 'queued';
CREATE INDEX IF NOT EXISTS idx_enrichment_jobs_claimed_at
    ON enrichment_jobs(claimed_at)
    WHERE status = 'processing';
CREATE INDEX IF NOT EXISTS idx_enrichment_jobs_subject ON enrichment_jobs(subject_id);
CREATE INDEX IF NOT EXISTS idx_enrichment_jobs_owner ON enrichment_jobs(owner_id);
CREATE INDEX IF NOT EXISTS idx_enrichment_jobs_updated ON enrichment_jobs(updated_at DESC);
"""

async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(MIGRATION)
        print("Migration 001 applied: enrichment_jobs table created")

        # Verify
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = 'enrichment_jobs'"
        )
        print(f"Table has {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
