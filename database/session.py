"""
Async database engine and session scopes for the SQL store.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    await init_db()                    # once at startup
    async with get_session() as db:    # one unit of work
        ...
    await close_db()                   # at shutdown

Tests build an isolated engine with build_engine(url) and pass its
session factory to SqlBotStore directly.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

_ASYNC_DRIVERS = [
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql://", "mysql+aiomysql://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def _to_async_url(db_url: str) -> str:
    """Swap a sync driver prefix for its async equivalent; unknown URLs pass through."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict[str, Any]:
    if "sqlite" in db_url:
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": echo,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    url = _to_async_url(db_url)
    return create_async_engine(url, **_engine_kwargs(url, echo))


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it from settings on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database.url, echo=settings.debug)
        url = str(_engine.url)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=url.split("@")[-1] if "@" in url else url)
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = session_factory_for(get_engine())
    return _session_factory


@asynccontextmanager
async def get_session(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Commit on clean exit, roll back and re-raise on error."""
    factory = factory or _get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
