"""Tests for application wiring."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI

from enrichment_queue.admin import queue as queue_admin
from enrichment_queue.config import Settings, get_settings
from enrichment_queue.core.lifespan import (
    create_processor,
    create_queue_manager,
    get_queue_manager,
    init_database,
    lifespan,
)
from enrichment_queue.jobs.processor import HttpAIProcessor
from enrichment_queue.repositories.jobs import JobRepository
from enrichment_queue.repositories.memory import InMemoryJobRepository
from enrichment_queue.repositories.subjects import SubjectStatusRepository


class TestCreateQueueManager:
    def test_without_database_url_uses_memory_store(self):
        manager = create_queue_manager(None, Settings(database_url=None))
        assert isinstance(manager.store, InMemoryJobRepository)

    def test_configured_store_without_pool_has_no_manager(self):
        settings = Settings(database_url="postgresql://u:p@127.0.0.1:1/none")
        assert create_queue_manager(None, settings) is None

    def test_with_pool_uses_postgres(self):
        pool = MagicMock()
        manager = create_queue_manager(pool, Settings())

        assert isinstance(manager.store, JobRepository)
        assert isinstance(manager._subjects, SubjectStatusRepository)

    def test_subject_reflection_can_be_disabled(self):
        manager = create_queue_manager(
            MagicMock(), Settings(reflect_subject_status=False)
        )
        assert manager._subjects is None


class TestCreateProcessor:
    def test_disabled_without_url(self):
        assert create_processor(Settings(processor_url=None)) is None

    def test_http_processor_with_url(self, monkeypatch):
        monkeypatch.setenv("PROCESSOR_URL", "http://enricher:9000")
        processor = create_processor(Settings())

        assert isinstance(processor, HttpAIProcessor)
        assert processor.base_url == "http://enricher:9000"


class TestInitDatabase:
    @pytest.mark.asyncio
    async def test_no_url(self):
        assert await init_database(Settings(database_url=None)) is None

    @pytest.mark.asyncio
    async def test_unreachable_database_does_not_fall_back_to_memory(self):
        settings = Settings(database_url="postgresql://x/db")
        with patch(
            "enrichment_queue.core.lifespan.asyncpg.create_pool",
            AsyncMock(side_effect=OSError("connection refused")),
        ):
            pool = await init_database(settings)

        assert pool is None
        assert create_queue_manager(pool, settings) is None

    @pytest.mark.asyncio
    async def test_pool_created(self):
        fake_pool = MagicMock()
        with patch(
            "enrichment_queue.core.lifespan.asyncpg.create_pool",
            AsyncMock(return_value=fake_pool),
        ) as create_pool:
            pool = await init_database(Settings(database_url="postgresql://x/db"))

        assert pool is fake_pool
        assert create_pool.call_args.kwargs["statement_cache_size"] == 0


class TestLifespan:
    @pytest.mark.asyncio
    async def test_unreachable_database_leaves_queue_unwired(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://x/db")
        monkeypatch.setenv("PROCESSOR_URL", "http://enricher:9000")
        get_settings.cache_clear()

        with patch(
            "enrichment_queue.core.lifespan.asyncpg.create_pool",
            AsyncMock(side_effect=OSError("connection refused")),
        ):
            async with lifespan(FastAPI()):
                assert get_queue_manager() is None
                assert queue_admin._queue_manager is None
                assert queue_admin._worker is None

    @pytest.mark.asyncio
    async def test_no_database_url_wires_memory_store(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("PROCESSOR_URL", raising=False)
        get_settings.cache_clear()

        async with lifespan(FastAPI()):
            manager = get_queue_manager()
            assert isinstance(manager.store, InMemoryJobRepository)
            assert queue_admin._queue_manager is manager

        assert get_queue_manager() is None
