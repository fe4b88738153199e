"""Proxy endpoints used by the account linking form."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..broker import BrokerAccount, BrokerError, BrokerMarket, TradeLockerClient
from ..crypto import PasswordCipher
from ..dependencies import get_broker_client, get_password_cipher
from ..logging import get_logger
from ..security import bearer_token

router = APIRouter(tags=["tradelocker"])

logger = get_logger("competition.routes.tradelocker")


class TradeLockerAuthRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    server: Optional[str] = None
    account_type: Optional[str] = Field(default=None, alias="accountType")

    model_config = ConfigDict(populate_by_name=True)


class EncryptPasswordRequest(BaseModel):
    password: Optional[str] = None


def _error(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _relay(exc: BrokerError, fallback: str, *, fallback_status: int) -> JSONResponse:
    if exc.is_network_error:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, fallback, str(exc))
    # A 2xx with an unusable body is still a failure for our caller.
    if exc.status_code < 400:
        return _error(fallback_status, fallback)
    body = exc.body if isinstance(exc.body, (dict, list)) else {"error": fallback}
    return JSONResponse(status_code=exc.status_code, content=body)


def format_account(account: BrokerAccount) -> dict[str, Any]:
    return {
        "accountId": account.id,
        "accNum": account.acc_num,
        "displayNumber": account.id,
        "name": account.name,
        "balance": account.balance,
        "equity": account.equity,
        "margin": account.margin,
        "freeMargin": account.free_margin,
        "profit": account.profit,
        "currency": account.currency,
    }


@router.post("/tradelocker/auth")
async def tradelocker_auth(
    payload: TradeLockerAuthRequest,
    broker: TradeLockerClient = Depends(get_broker_client),
):
    """Check broker credentials and hand the access token to the client."""

    if not payload.email or not payload.password or not payload.server:
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required fields")

    market = BrokerMarket.resolve(payload.account_type)
    try:
        token = await broker.authenticate(payload.email, payload.password, payload.server, market)
    except BrokerError as exc:
        logger.info("tradelocker_auth_rejected", status_code=exc.status_code, market=market.value)
        return _relay(exc, "Authentication failed", fallback_status=status.HTTP_401_UNAUTHORIZED)
    return {"accessToken": token}


@router.get("/tradelocker/accounts")
async def tradelocker_accounts(
    authorization: Optional[str] = Header(default=None),
    account_type: Optional[str] = Header(default=None, alias="x-account-type"),
    broker: TradeLockerClient = Depends(get_broker_client),
):
    """List the broker accounts reachable with the caller's access token."""

    token = bearer_token(authorization)
    if token is None:
        return _error(status.HTTP_401_UNAUTHORIZED, "Missing authorization header")

    market = BrokerMarket.resolve(account_type)
    try:
        accounts = await broker.list_accounts(token, market)
    except BrokerError as exc:
        logger.info("tradelocker_accounts_rejected", status_code=exc.status_code, market=market.value)
        return _relay(exc, "Failed to fetch accounts", fallback_status=status.HTTP_502_BAD_GATEWAY)
    return {"accounts": [format_account(account) for account in accounts]}


@router.post("/encrypt-password")
async def encrypt_password(
    payload: EncryptPasswordRequest,
    cipher: PasswordCipher = Depends(get_password_cipher),
):
    """Encrypt a broker password before the client stores it."""

    if not payload.password:
        return _error(status.HTTP_400_BAD_REQUEST, "Password is required")
    return {"encrypted": cipher.encrypt(payload.password)}
