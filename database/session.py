"""
Async engine and session factory for the worker.

Driver mapping:
  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://

Usage:
    factory = get_session_factory()
    async with UnitOfWork(factory) as uow:   # one transaction + post-commit hooks
        ...
    await close_db()                         # at shutdown
"""
from __future__ import annotations

import structlog
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

# PostgreSQL pool sizing for two loops plus the health endpoint
_POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    for prefix, async_prefix in _ASYNC_DRIVERS.items():
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict[str, Any]:
    if not db_url.startswith("sqlite"):
        return {"echo": echo, **_POOL_OPTIONS}
    kwargs: dict[str, Any] = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if ":memory:" in db_url or db_url.endswith("://"):
        # an in-memory database exists only on its one connection
        kwargs["poolclass"] = StaticPool
    return kwargs


def _redacted(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """pysqlite's own BEGIN handling breaks SAVEPOINT; emit BEGIN from SQLAlchemy instead."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Build an engine for any supported URL, sync or async spelling."""
    db_url = _to_async_url(url)
    engine = create_async_engine(db_url, **_engine_kwargs(db_url, echo))
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        db = get_settings().database
        _engine = create_engine_for(db.url, echo=db.echo)
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redacted(_engine))
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create missing tables (development and tests; production schema is migrated elsewhere)."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
