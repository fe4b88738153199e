"""Trigger endpoint for the balance refresh job."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ...db.session import SessionFactory
from ..broker import TradeLockerClient
from ..config import Settings
from ..crypto import PasswordCipher
from ..dependencies import (
    get_broker_client,
    get_sessionmaker,
    get_settings,
    require_refresh_caller,
)
from ..logging import get_logger
from ..refresh import BalanceRefreshJob
from ..schemas.refresh import RefreshFailure, RefreshSummary

router = APIRouter(tags=["refresh"])

logger = get_logger("competition.routes.refresh")


@router.api_route(
    "/refresh-balances",
    methods=["GET", "POST"],
    response_model=RefreshSummary,
    response_model_exclude_none=True,
    responses={status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": RefreshFailure}},
)
async def refresh_balances(
    caller: str = Depends(require_refresh_caller),
    app_settings: Settings = Depends(get_settings),
    broker: TradeLockerClient = Depends(get_broker_client),
    session_factory: SessionFactory = Depends(get_sessionmaker),
):
    """Run the balance refresh job and report its outcome.

    ``GET`` is accepted alongside ``POST`` for schedulers that cannot send a
    request body.
    """

    try:
        job = BalanceRefreshJob(
            session_factory=session_factory,
            cipher=PasswordCipher(app_settings.security.encryption_key or ""),
            broker=broker,
        )
        result = await job.run(trigger=caller)
    except Exception as exc:
        logger.exception("refresh_balances_failed", caller=caller)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=RefreshFailure(details=str(exc)).model_dump(),
        )

    return RefreshSummary.model_validate(result.as_response())
