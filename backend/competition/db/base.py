"""Declarative base plus the process-wide async engine and session factory."""
from __future__ import annotations

from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


metadata = MetaData(
    naming_convention={
        "ix": "ix_%(table_name)s_%(column_0_name)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Base class for competition ORM models."""

    metadata = metadata


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(database_url: str, **overrides: Any) -> dict[str, Any]:
    """Return engine keyword arguments suited to the database backend.

    Server databases get ``pool_pre_ping`` so connections dropped between cron
    runs are replaced transparently. SQLite keeps SQLAlchemy's defaults.
    """

    options: dict[str, Any] = {}
    if make_url(database_url).get_backend_name() != "sqlite":
        options["pool_pre_ping"] = True
    options.update(overrides)
    return options


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create and cache the engine and its session factory.

    Calling this again while an engine is cached returns the cached engine.
    """

    global _engine, _session_factory

    if _engine is None:
        _engine = create_async_engine(database_url, **engine_options(database_url, **kwargs))
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database engine has not been initialised")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory bound to the cached engine."""

    if _session_factory is None:
        raise RuntimeError("Database session factory has not been initialised")
    return _session_factory


def create_session(**kwargs: Any) -> AsyncSession:
    return get_session_factory()(**kwargs)


async def dispose_engine() -> None:
    """Dispose of the cached engine and forget the session factory."""

    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


__all__ = [
    "AsyncEngine",
    "AsyncSession",
    "Base",
    "create_engine",
    "create_session",
    "dispose_engine",
    "engine_options",
    "get_engine",
    "get_session_factory",
    "metadata",
]
