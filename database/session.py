"""
Async engine and transaction scope for the SQL reminder store.

Every store method runs in its own short transaction: schedule transitions
are single conditional UPDATEs and the delivery commit is one record insert
plus one UPDATE, so nothing holds a connection across a channel send.

Several scanner processes may share one SQLite file. Writers then queue on
the database lock for up to `busy_timeout_seconds` instead of failing with
"database is locked".
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}


def _to_async_url(db_url: str) -> str:
    """Swap a plain or sync driver scheme for its async driver."""
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, config: DatabaseConfig, echo: bool) -> dict:
    if db_url.startswith("sqlite"):
        return {"echo": echo, "connect_args": {"timeout": config.busy_timeout_seconds}}
    return {
        "echo": echo,
        "pool_size": config.pool_size,
        "max_overflow": config.pool_size,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def redacted_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """Return the process-wide engine, creating it from `url` or settings."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(url or settings.database.url)
        _engine = create_async_engine(
            make_url(db_url), **_engine_kwargs(db_url, settings.database, settings.debug),
        )
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=redacted_url(_engine))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed when the block exits, rolled back if it raises."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions.begin() as session:
        yield session


async def init_db(url: Optional[str] = None) -> None:
    """Create any missing reminder tables."""
    engine = get_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessions = None
        logger.info("database_closed")
