"""Testing utilities for competition API tests."""
from __future__ import annotations

from itertools import count

from sqlalchemy.ext.asyncio import AsyncSession

from backend.competition.app.crypto import PasswordCipher
from backend.competition.db.models import TradingAccount, User

ENCRYPTION_KEY = "test-encryption-key"
ADMIN_API_KEY = "test-admin-key"
CRON_SECRET = "test-cron-secret"
BROKER_API_KEY = "test-broker-api-key"

_sequence = count(1)


async def create_user(session: AsyncSession, *, username: str | None = None) -> User:
    """Persist a competition participant."""

    suffix = next(_sequence)
    user = User(username=username or f"trader-{suffix}", email=f"trader-{suffix}@example.com")
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def create_account(
    session: AsyncSession,
    user: User,
    *,
    account_number: str,
    cipher: PasswordCipher | None = None,
    password: str = "broker-password",
    tl_email: str | None = "trader@example.com",
    tl_server: str | None = "DEMO-SERVER",
    tl_account_type: str | None = "live",
    starting_balance: float = 10_000.0,
    current_balance: float = 10_000.0,
    is_active: bool = True,
    balance_override: bool = False,
    show_on_leaderboard: bool = True,
    encrypted_password: str | None = None,
) -> TradingAccount:
    """Persist a trading account, encrypting *password* when a cipher is given."""

    if encrypted_password is None and cipher is not None:
        encrypted_password = cipher.encrypt(password)

    account = TradingAccount(
        user_id=user.id,
        account_number=account_number,
        account_name=f"Account {account_number}",
        tl_email=tl_email,
        tl_server=tl_server,
        tl_account_type=tl_account_type,
        tl_password_encrypted=encrypted_password,
        starting_balance=starting_balance,
        current_balance=current_balance,
        is_active=is_active,
        balance_override=balance_override,
        show_on_leaderboard=show_on_leaderboard,
    )
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


def broker_account(
    identifier: str, acc_num: str, account_balance: float | str | None, **extra
) -> dict:
    """Build an ``all-accounts`` entry the way the broker reports it."""

    payload = {"id": identifier, "accNum": acc_num, "currency": "USD", "name": f"TL {acc_num}"}
    if account_balance is not None:
        payload["accountBalance"] = account_balance
    payload.update(extra)
    return payload
