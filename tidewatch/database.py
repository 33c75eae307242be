"""Async engine and sessions.

The engine is created lazily so it binds to the running event loop. The
escalation engine and the step timers share the same session factory as
the request handlers; each unit of work opens its own short session.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tidewatch.config import settings

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool options for the configured backend.

    Tests and SQLite get NullPool; PostgreSQL gets a small pre-pinged pool
    sized for concurrent step dispatch plus webhook traffic.
    """
    if settings.testing or make_url(database_url).get_backend_name() == "sqlite":
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "echo": settings.log_level.upper() == "DEBUG" and settings.log_format == "text",
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.database_url, **engine_options(settings.database_url)
        )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by routers, the escalation engine and timers.

    ``expire_on_commit=False`` so alerts returned after a commit can still be
    serialized once their session is closed.
    """
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_session_maker()() as session:
        yield session


async def check_database_connection() -> bool:
    """Return True if the database answers a trivial query."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except (SQLAlchemyError, OSError):
        return False


async def close_database() -> None:
    """Dispose of the engine; the next call to get_engine() recreates it."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
