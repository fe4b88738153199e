"""Trading accounts linked by one participant.

End-user sessions live in the web tier, which calls these endpoints with the
admin API key on behalf of the signed-in participant.
"""
from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import TradingAccount, User
from ..crypto import PasswordCipher
from ..dependencies import get_password_cipher, get_session, require_admin
from ..logging import get_logger
from ..schemas.accounts import AccountLinkRequest, AccountUpdateRequest, TradingAccountResource

router = APIRouter(
    prefix="/users/{user_id}/accounts",
    tags=["accounts"],
    dependencies=[Depends(require_admin)],
)

logger = get_logger("competition.routes.accounts")


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def _get_owned_account(db: AsyncSession, user_id: int, account_id: int) -> TradingAccount:
    account = await db.get(TradingAccount, account_id)
    if account is None or account.user_id != user_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Trading account not found")
    return account


async def _user_accounts(db: AsyncSession, user_id: int) -> list[TradingAccount]:
    result = await db.execute(
        select(TradingAccount)
        .where(TradingAccount.user_id == user_id)
        .order_by(TradingAccount.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@router.get("", response_model=list[TradingAccountResource])
async def list_accounts(
    user_id: int,
    db: AsyncSession = Depends(get_session),
) -> list[TradingAccountResource]:
    await _get_user(db, user_id)
    accounts = await _user_accounts(db, user_id)
    return [TradingAccountResource.model_validate(account) for account in accounts]


@router.post("", response_model=list[TradingAccountResource], status_code=status.HTTP_201_CREATED)
async def link_accounts(
    user_id: int,
    payload: AccountLinkRequest,
    db: AsyncSession = Depends(get_session),
    cipher: PasswordCipher = Depends(get_password_cipher),
) -> list[TradingAccountResource]:
    """Store broker credentials for the selected accounts.

    An account number the participant already linked is re-linked in place:
    credentials and balance are replaced and the account is reactivated, while
    ``starting_balance`` is kept. New accounts start at the reported balance.
    Only the first account of a participant without a competition entry is put
    on the leaderboard.
    """

    await _get_user(db, user_id)
    email = payload.email.strip()
    server = payload.server.strip()
    if not email or not server:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Email and server cannot be empty"
        )

    encrypted = cipher.encrypt(payload.password)
    now = datetime.now(timezone.utc)
    existing = {account.account_number: account for account in await _user_accounts(db, user_id)}
    has_competition_entry = any(account.show_on_leaderboard for account in existing.values())

    linked: list[TradingAccount] = []
    for selected in payload.accounts:
        account = existing.get(selected.account_number)
        if account is None:
            account = TradingAccount(
                user_id=user_id,
                account_number=selected.account_number,
                account_name=selected.account_name,
                starting_balance=selected.balance,
                currency=selected.currency or "USD",
                show_on_leaderboard=not has_competition_entry,
            )
            has_competition_entry = True
            db.add(account)
            existing[selected.account_number] = account
        account.tl_email = email
        account.tl_server = server
        account.tl_password_encrypted = encrypted
        account.tl_account_type = payload.account_type
        account.current_balance = selected.balance
        account.is_active = True
        account.last_updated = now
        if account not in linked:
            linked.append(account)

    await db.commit()
    for account in linked:
        await db.refresh(account)
    logger.info(
        "accounts_linked",
        user_id=user_id,
        server=server,
        account_ids=[account.id for account in linked],
    )
    return [TradingAccountResource.model_validate(account) for account in linked]


@router.patch("/{account_id}", response_model=TradingAccountResource)
async def update_account(
    user_id: int,
    account_id: int,
    payload: AccountUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> TradingAccountResource:
    """Rename an account or move the participant's competition entry."""

    account = await _get_owned_account(db, user_id, account_id)
    changes = payload.model_dump(exclude_unset=True)

    if "account_name" in changes:
        account.account_name = (changes["account_name"] or "").strip() or None

    if changes.get("show_on_leaderboard") is True:
        await db.execute(
            update(TradingAccount)
            .where(TradingAccount.user_id == user_id, TradingAccount.id != account_id)
            .values(show_on_leaderboard=False)
            .execution_options(synchronize_session=False)
        )
        account.show_on_leaderboard = True
    elif changes.get("show_on_leaderboard") is False:
        account.show_on_leaderboard = False

    await db.commit()
    await db.refresh(account)
    logger.info("account_updated", user_id=user_id, account_id=account_id, fields=sorted(changes))
    return TradingAccountResource.model_validate(account)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    user_id: int,
    account_id: int,
    db: AsyncSession = Depends(get_session),
) -> Response:
    account = await _get_owned_account(db, user_id, account_id)
    await db.delete(account)
    await db.commit()
    logger.info("account_unlinked", user_id=user_id, account_id=account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
