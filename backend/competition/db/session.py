"""Session helpers shared by request handlers and background jobs."""
from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession

from .base import create_session

SessionFactory = Callable[[], AsyncSession]


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` for request scoped dependencies."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncIterator[AsyncSession]:
    """Run one unit of work: commit on success, roll back on error.

    Each job write goes through its own scope so a failure leaves earlier
    writes committed.
    """

    session = factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


__all__ = ["SessionFactory", "get_session", "session_scope"]
