"""Administrative endpoints for moderating accounts and inspecting job runs."""
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ...db.models import CompetitionSettings, TradingAccount, User
from ..accounts import refresh_candidates_query
from ..crypto import mask_email
from ..dependencies import get_session, require_admin
from ..logging import get_logger
from ..run_log import list_recent_runs
from ..schemas.accounts import CompetitionSettingsResource, TradingAccountResource, UserResource
from ..schemas.refresh import CronLogResource

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

logger = get_logger("competition.routes.admin")


class AdminAccountUpdate(BaseModel):
    current_balance: float | None = Field(default=None, ge=0)
    starting_balance: float | None = Field(default=None, ge=0)
    balance_override: bool | None = None
    show_on_leaderboard: bool | None = None
    is_active: bool | None = None

    model_config = ConfigDict(extra="forbid")


class AdminUserUpdate(BaseModel):
    is_admin: bool

    model_config = ConfigDict(extra="forbid")


@router.get("/debug-accounts")
async def debug_accounts(db: AsyncSession = Depends(get_session)) -> dict:
    """Explain which accounts the refresh job will pick up and why."""

    all_accounts = (await db.execute(select(TradingAccount))).scalars().all()
    active = [
        account
        for account in all_accounts
        if account.is_active and not account.balance_override
    ]
    eligible_ids = {
        account.id
        for account in (await db.execute(refresh_candidates_query())).scalars().all()
        if account.has_credentials
    }

    return {
        "all_accounts": len(all_accounts),
        "active_accounts": len(active),
        "accounts_with_password": sum(1 for a in active if a.tl_password_encrypted),
        "accounts_without_password": sum(1 for a in active if not a.tl_password_encrypted),
        "eligible_accounts": len(eligible_ids),
        "active_accounts_list": [
            {
                "id": account.id,
                "account_number": account.account_number,
                "is_active": account.is_active,
                "balance_override": account.balance_override,
                "has_encrypted_password": bool(account.tl_password_encrypted),
                "tl_email": mask_email(account.tl_email),
                "tl_server": account.tl_server,
                "eligible": account.id in eligible_ids,
            }
            for account in active
        ],
    }


@router.get("/cron-logs", response_model=list[CronLogResource])
async def get_cron_logs(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
) -> list[CronLogResource]:
    runs = await list_recent_runs(db, limit=limit)
    return [CronLogResource.model_validate(run) for run in runs]


@router.patch("/accounts/{account_id}", response_model=TradingAccountResource)
async def update_account(
    account_id: int,
    payload: AdminAccountUpdate,
    db: AsyncSession = Depends(get_session),
) -> TradingAccountResource:
    """Pin or edit balances and toggle visibility flags for one account."""

    account = await db.get(TradingAccount, account_id)
    if account is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Trading account not found")

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("current_balance") is not None:
        account.current_balance = changes["current_balance"]
        account.last_updated = datetime.now(timezone.utc)
    if changes.get("starting_balance") is not None:
        account.starting_balance = changes["starting_balance"]
    for flag in ("balance_override", "show_on_leaderboard", "is_active"):
        if changes.get(flag) is not None:
            setattr(account, flag, changes[flag])

    await db.commit()
    await db.refresh(account)
    logger.info("admin_account_updated", account_id=account_id, fields=sorted(changes))
    return TradingAccountResource.model_validate(account)


@router.get("/users", response_model=list[UserResource])
async def list_users(db: AsyncSession = Depends(get_session)) -> list[UserResource]:
    """Participants with their linked accounts, newest first."""

    result = await db.execute(
        select(User)
        .options(selectinload(User.trading_accounts))
        .order_by(User.created_at.desc(), User.id.desc())
        .execution_options(populate_existing=True)
    )
    return [UserResource.model_validate(user) for user in result.scalars().all()]


@router.patch("/users/{user_id}", response_model=UserResource)
async def update_user(
    user_id: int,
    payload: AdminUserUpdate,
    db: AsyncSession = Depends(get_session),
) -> UserResource:
    result = await db.execute(
        select(User)
        .options(selectinload(User.trading_accounts))
        .where(User.id == user_id)
        .execution_options(populate_existing=True)
    )
    user = result.scalars().first()
    if user is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="User not found")

    user.is_admin = payload.is_admin
    await db.commit()
    logger.info("admin_user_updated", user_id=user_id, is_admin=payload.is_admin)
    return UserResource.model_validate(user)


async def _load_competition_settings(db: AsyncSession) -> CompetitionSettings | None:
    result = await db.execute(select(CompetitionSettings).order_by(CompetitionSettings.id.asc()))
    return result.scalars().first()


@router.get("/competition-settings", response_model=CompetitionSettingsResource)
async def get_competition_settings(
    db: AsyncSession = Depends(get_session),
) -> CompetitionSettingsResource:
    record = await _load_competition_settings(db)
    if record is None:
        return CompetitionSettingsResource()
    return CompetitionSettingsResource.model_validate(record)


@router.put("/competition-settings", response_model=CompetitionSettingsResource)
async def put_competition_settings(
    payload: CompetitionSettingsResource,
    db: AsyncSession = Depends(get_session),
) -> CompetitionSettingsResource:
    if payload.start_date and payload.end_date and payload.end_date < payload.start_date:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end_date must not be before start_date",
        )

    record = await _load_competition_settings(db)
    if record is None:
        record = CompetitionSettings()
        db.add(record)
    record.start_date = payload.start_date
    record.end_date = payload.end_date
    record.referral_link = payload.referral_link
    await db.commit()
    await db.refresh(record)
    return CompetitionSettingsResource.model_validate(record)
