"""Async SQLAlchemy engine and session factory for the SQL ChatStore.

A streamed chat turn outlives the FastAPI request scope, so no request
holds a session: SqlChatStore opens one short transaction per call from
the factory created here. The engine lives from lifespan startup
(init_db) to shutdown (close_db).
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from chatbroker.config import Settings, get_settings

log = structlog.get_logger(__name__)

# Deterministic constraint names so schema diffs stay stable
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> async_sessionmaker[AsyncSession]:
    """Create the engine and session factory (idempotent per process start).

    Args:
        settings: Application settings; the cached singleton when omitted
        for_test: Use NullPool so connections never leak between tests

    Returns:
        The session factory handed to SqlChatStore
    """
    global _engine, _session_factory
    cfg = settings or get_settings()

    engine_kwargs: dict[str, Any] = {
        "echo": cfg.db_echo_sql,
        "connect_args": {"server_settings": {"application_name": "chatbroker"}},
    }
    if for_test:
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=1800)

    _engine = create_async_engine(cfg.database_url, **engine_kwargs)
    # Rows are read after their transaction has committed
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    log.info("database.initialized", host=cfg.database_url.rsplit("@", 1)[-1])
    return _session_factory


async def close_db() -> None:
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        log.info("database.closed")


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def create_tables() -> None:
    """Create missing tables. Used in dev; deployed schemas are managed separately."""
    import chatbroker.models  # noqa: F401  registers every table on Base.metadata

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("database.tables_created", tables=sorted(Base.metadata.tables))
