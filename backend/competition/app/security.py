"""Shared-secret checks guarding the refresh trigger and admin routes."""
from __future__ import annotations

import hmac
from typing import Final, Mapping

from .config import SecuritySettings

ADMIN_KEY_HEADER: Final[str] = "x-admin-api-key"
CRON_SECRET_HEADER: Final[str] = "x-cron-secret"

CALLER_ADMIN: Final[str] = "admin"
CALLER_CRON: Final[str] = "cron"


class AuthorizationError(PermissionError):
    """Caller did not present a valid admin key or cron secret."""


def _secret_matches(candidate: str | None, expected: str | None) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.strip().encode("utf-8"), expected.encode("utf-8"))


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer`` header value."""

    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def is_admin_request(headers: Mapping[str, str], security: SecuritySettings) -> bool:
    return _secret_matches(headers.get(ADMIN_KEY_HEADER), security.admin_api_key)


def authorize_refresh_caller(headers: Mapping[str, str], security: SecuritySettings) -> str:
    """Return which credential admitted the caller or raise :class:`AuthorizationError`."""

    if is_admin_request(headers, security):
        return CALLER_ADMIN
    if _secret_matches(bearer_token(headers.get("authorization")), security.cron_secret):
        return CALLER_CRON
    if _secret_matches(headers.get(CRON_SECRET_HEADER), security.cron_secret):
        return CALLER_CRON
    raise AuthorizationError("Unauthorized")


def authorize_admin(headers: Mapping[str, str], security: SecuritySettings) -> None:
    if not is_admin_request(headers, security):
        raise AuthorizationError("Unauthorized")


__all__ = [
    "ADMIN_KEY_HEADER",
    "AuthorizationError",
    "CALLER_ADMIN",
    "CALLER_CRON",
    "CRON_SECRET_HEADER",
    "authorize_admin",
    "authorize_refresh_caller",
    "bearer_token",
    "is_admin_request",
]
