"""
Database engine and sessions for job handlers and the scheduler.

Each job opens its own short-lived session through get_db_session(). The
session commits when the block exits cleanly and rolls back otherwise, so a
handler that raises leaves no partial writes behind for its retry.

Side effects that must not outlive a rollback, such as enqueueing a purge for
an upstream being destroyed, are registered with after_commit() and run only
once the transaction is durable.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from vregistry.config import settings
from vregistry.logging_config import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

AFTER_COMMIT_KEY = "vregistry.after_commit"


async def init_db() -> None:
    """Create the engine and check connectivity."""
    global _engine, _session_factory  # noqa: PLW0603
    db = settings.database
    logger.info("Initializing database connection", pool_size=db.pool_size)

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        connect_args={"server_settings": {"statement_timeout": str(db.statement_timeout_ms)}},
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is None:
        return
    logger.info("Closing database connection pool")
    await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """Unit-of-work session: commit on success, roll back on any exception."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            discard_after_commit(session)
            await session.rollback()
            raise
        await run_after_commit(session)


def after_commit(session: AsyncSession, callback: Callable[[], Awaitable[Any]]) -> None:
    """Run `callback` once `session` commits. A rollback discards it."""
    session.info.setdefault(AFTER_COMMIT_KEY, []).append(callback)


def discard_after_commit(session: AsyncSession) -> None:
    session.info.pop(AFTER_COMMIT_KEY, None)


async def run_after_commit(session: AsyncSession) -> None:
    """Run the callbacks registered on a committed session, in order.

    The transaction is already durable, so a failing callback is logged and
    the remaining ones still run.
    """
    for callback in session.info.pop(AFTER_COMMIT_KEY, []):
        try:
            await callback()
        except Exception as e:
            logger.exception("After-commit callback failed", error=str(e))
