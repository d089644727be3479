"""Database engine setup and session management."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from plannerai.config import settings
from plannerai.db.models import Base

logger = logging.getLogger(__name__)

# Seconds SQLite waits on a locked database; trace writes run concurrently
# with entity writes.
SQLITE_BUSY_TIMEOUT = 15

# Lazy initialization - set by init_db()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_engine_kwargs(url: str) -> dict:
    """Engine kwargs for the configured backend."""
    if url.startswith("sqlite"):
        return {"echo": False, "connect_args": {"timeout": SQLITE_BUSY_TIMEOUT}}
    return {"echo": False, "pool_size": 5, "max_overflow": 10, "pool_recycle": 3600}


def create_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, **_get_engine_kwargs(url))


async def init_db(url: str | None = None) -> None:
    """Create the engine and all entity and trace tables.

    Idempotent: a second call keeps the existing engine.
    """
    global _engine, _session_factory

    if _engine is not None and _session_factory is not None:
        return

    _engine = create_engine(url or settings.database_url)
    _session_factory = async_sessionmaker(
        _engine, class_=AsyncSession, expire_on_commit=False
    )

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready at %s", _engine.url.render_as_string(hide_password=True))


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
