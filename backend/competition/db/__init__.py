"""Persistence layer: ORM models, engine lifecycle and session helpers."""
from __future__ import annotations

from . import models as _models
from .base import (
    Base,
    create_engine,
    create_session,
    dispose_engine,
    get_engine,
    get_session_factory,
    metadata,
)
from .models import *  # noqa: F401,F403
from .session import SessionFactory, get_session, session_scope

__all__ = [
    "Base",
    "SessionFactory",
    "create_engine",
    "create_session",
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "metadata",
    "session_scope",
] + _models.__all__
