"""Common FastAPI dependency helpers."""
from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from ..db.base import get_session_factory
from ..db.session import SessionFactory, get_session
from .broker import TradeLockerClient
from .config import Settings, settings
from .crypto import PasswordCipher
from .security import authorize_admin, authorize_refresh_caller


def get_settings() -> Settings:
    """Return the process-wide settings instance."""

    return settings


def get_sessionmaker() -> SessionFactory:
    """Return a factory producing independent sessions for background work."""

    return get_session_factory()


def get_broker_client(app_settings: Settings = Depends(get_settings)) -> TradeLockerClient:
    return TradeLockerClient(app_settings.broker)


def get_password_cipher(app_settings: Settings = Depends(get_settings)) -> PasswordCipher:
    """Return the cipher for stored broker passwords."""

    secret = app_settings.security.encryption_key
    if not secret:
        raise HTTPException(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Encryption key is not configured",
        )
    return PasswordCipher(secret)


async def require_refresh_caller(
    request: Request,
    app_settings: Settings = Depends(get_settings),
) -> str:
    """Admit admin-key and cron-secret callers of the refresh trigger."""

    return authorize_refresh_caller(request.headers, app_settings.security)


async def require_admin(
    request: Request,
    app_settings: Settings = Depends(get_settings),
) -> None:
    authorize_admin(request.headers, app_settings.security)


__all__ = [
    "get_broker_client",
    "get_password_cipher",
    "get_session",
    "get_sessionmaker",
    "get_settings",
    "require_admin",
    "require_refresh_caller",
]
