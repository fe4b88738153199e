"""Query and update helpers for stored trading accounts."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db.models import TradingAccount
from ..db.session import SessionFactory, session_scope


class StoreUpdateError(RuntimeError):
    """Raised when a balance write-back does not reach the database."""


def refresh_candidates_query():
    """Accounts the refresh job may touch, before the local credential check."""

    return (
        select(TradingAccount)
        .where(
            TradingAccount.is_active.is_(True),
            TradingAccount.balance_override.is_(False),
            TradingAccount.tl_password_encrypted.is_not(None),
        )
        .order_by(TradingAccount.id.asc())
    )


async def load_refresh_candidates(session: AsyncSession) -> list[TradingAccount]:
    """Return active, non-overridden accounts that carry complete credentials."""

    result = await session.execute(refresh_candidates_query())
    return [account for account in result.scalars().all() if account.has_credentials]


@dataclass(frozen=True)
class BalanceWrite:
    """Outcome of a single balance write-back."""

    account_id: int
    applied: bool
    overridden: bool = False


async def write_current_balance(
    session_factory: SessionFactory,
    account_id: int,
    balance: float,
    *,
    updated_at: datetime,
) -> BalanceWrite:
    """Persist *balance* for one account in its own transaction.

    The update is conditional on ``balance_override`` still being false, so an
    override set by an admin while the job is running wins.
    """

    try:
        async with session_scope(session_factory) as session:
            result = await session.execute(
                update(TradingAccount)
                .where(
                    TradingAccount.id == account_id,
                    TradingAccount.balance_override.is_(False),
                )
                .values(current_balance=balance, last_updated=updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return BalanceWrite(account_id=account_id, applied=True)

            overridden = await session.scalar(
                select(TradingAccount.balance_override).where(TradingAccount.id == account_id)
            )
    except SQLAlchemyError as exc:
        raise StoreUpdateError(str(exc)) from exc

    if overridden is None:
        raise StoreUpdateError(f"trading account {account_id} no longer exists")
    return BalanceWrite(account_id=account_id, applied=False, overridden=True)


async def leaderboard_entries(session: AsyncSession) -> list[dict[str, Any]]:
    """Rank leaderboard-visible accounts by percentage gain."""

    result = await session.execute(
        select(TradingAccount)
        .options(selectinload(TradingAccount.user))
        .where(TradingAccount.show_on_leaderboard.is_(True))
        .execution_options(populate_existing=True)
    )
    accounts = list(result.scalars().all())
    accounts.sort(
        key=lambda account: (
            -account.percentage_change,
            -(account.current_balance - account.starting_balance),
            account.id,
        )
    )

    entries: list[dict[str, Any]] = []
    for rank, account in enumerate(accounts, start=1):
        entries.append(
            {
                "rank": rank,
                "username": account.user.username if account.user else None,
                "account_id": account.id,
                "account_number": account.account_number,
                "account_name": account.account_name,
                "starting_balance": account.starting_balance,
                "current_balance": account.current_balance,
                "profit": round(account.current_balance - account.starting_balance, 2),
                "percentage_change": round(account.percentage_change, 4),
                "currency": account.currency,
                "is_active": account.is_active,
                "last_updated": account.last_updated,
            }
        )
    return entries


__all__ = [
    "BalanceWrite",
    "StoreUpdateError",
    "leaderboard_entries",
    "load_refresh_candidates",
    "refresh_candidates_query",
    "write_current_balance",
]
