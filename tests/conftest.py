"""Pytest fixtures for planner assistant tests (SQLite via aiosqlite)."""

from __future__ import annotations

import os

os.environ.setdefault("PA_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PA_LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from plannerai.core.ai_logger import AiLogger, MemoryLogSink
from plannerai.core.context_tracker import ContextTracker
from plannerai.core.dispatcher import ToolDispatcher
from plannerai.core.repository import EntityRepository
from plannerai.db.models import Base


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite file per test; tables are created and dropped around it."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'planner.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return EntityRepository(session_factory)


@pytest.fixture
def tracker():
    return ContextTracker()


@pytest.fixture
def memory_sink():
    return MemoryLogSink(maxlen=5000)


@pytest.fixture
def ai_logger(memory_sink):
    return AiLogger(sinks=[memory_sink])


@pytest.fixture
def dispatcher(repository, tracker, ai_logger):
    return ToolDispatcher(
        repository,
        tracker=tracker,
        ai_logger=ai_logger,
        timeout_seconds=5.0,
        retry_backoff_seconds=0.0,
    )
