"""Balance refresh job: pull broker balances for every linked account."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from ..db.models import TradingAccount
from ..db.session import SessionFactory, session_scope
from .accounts import StoreUpdateError, load_refresh_candidates, write_current_balance
from .broker import BrokerAccount, BrokerAuthError, BrokerFetchError, BrokerMarket, TradeLockerClient
from .crypto import DecryptionError, PasswordCipher
from .logging import bind_contextvars, get_logger, unbind_contextvars
from .run_log import RunLogRecorder


logger = get_logger("competition.refresh")

_CONTEXT_KEYS = ("job", "trigger", "run_log_id")


class AccountMatchError(LookupError):
    """No broker account carries the identifier stored on a record."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshResult:
    """Summary returned to whoever triggered the job."""

    updated: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    run_log_id: int | None = None

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def as_response(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "updated": self.updated,
            "failed": self.failed,
            "total": self.total,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


@dataclass
class LoginGroup:
    """Stored accounts sharing one broker login."""

    email: str
    server: str
    accounts: list[TradingAccount] = field(default_factory=list)

    @property
    def market(self) -> BrokerMarket:
        return BrokerMarket.resolve(self.accounts[0].tl_account_type)

    @property
    def markets(self) -> set[BrokerMarket]:
        return {BrokerMarket.resolve(account.tl_account_type) for account in self.accounts}


def group_by_login(accounts: Iterable[TradingAccount]) -> list[LoginGroup]:
    """Partition accounts by ``(email, server)`` keeping first-seen order."""

    groups: dict[tuple[str, str], LoginGroup] = {}
    for account in accounts:
        key = (account.tl_email, account.tl_server)
        group = groups.get(key)
        if group is None:
            group = groups[key] = LoginGroup(email=account.tl_email, server=account.tl_server)
        group.accounts.append(account)
    return list(groups.values())


def match_broker_account(
    account: TradingAccount, broker_accounts: Sequence[BrokerAccount]
) -> BrokerAccount:
    for candidate in broker_accounts:
        if candidate.matches(account.account_number):
            return candidate
    raise AccountMatchError(
        f"Account {account.account_number}: not found among broker accounts"
    )


class BalanceRefreshJob:
    """Refresh ``current_balance`` for every eligible trading account.

    Login groups are processed one at a time and every broker call is awaited
    before the next one starts. Failures scoped to a group or a record are
    collected into the result; anything else marks the run log ``failed`` and
    propagates.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        cipher: PasswordCipher,
        broker: TradeLockerClient,
        run_log: RunLogRecorder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._broker = broker
        self._clock = clock
        self._run_log = run_log or RunLogRecorder(session_factory, clock=clock)

    async def _load_accounts(self) -> list[TradingAccount]:
        async with session_scope(self._session_factory) as session:
            return await load_refresh_candidates(session)

    async def run(self, *, trigger: str = "manual") -> RefreshResult:
        started = time.monotonic()
        result = RefreshResult()
        bind_contextvars(job="refresh_balances", trigger=trigger)
        try:
            accounts = await self._load_accounts()
            result.total = len(accounts)
            result.run_log_id = await self._run_log.start(
                accounts_total=result.total,
                details={"trigger": trigger},
            )
            bind_contextvars(run_log_id=result.run_log_id)

            groups = group_by_login(accounts)
            logger.info("refresh_started", accounts=result.total, login_groups=len(groups))
            for group in groups:
                await self._refresh_group(group, result)

            await self._run_log.complete(
                result.run_log_id,
                accounts_updated=result.updated,
                errors=result.errors,
                details={
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "login_groups": len(groups),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            logger.info(
                "refresh_completed",
                updated=result.updated,
                failed=result.failed,
                total=result.total,
            )
            return result
        except Exception as exc:
            logger.exception("refresh_aborted", error=str(exc))
            if result.run_log_id is not None:
                try:
                    await self._run_log.fail(
                        result.run_log_id,
                        str(exc) or exc.__class__.__name__,
                        details={"duration_ms": int((time.monotonic() - started) * 1000)},
                    )
                except Exception:
                    logger.exception("cron_log_fail_update_failed")
            raise
        finally:
            unbind_contextvars(*_CONTEXT_KEYS)

    def _fail_group(self, group: LoginGroup, result: RefreshResult, reason: str) -> None:
        for account in group.accounts:
            result.record_failure(f"Account {account.account_number} ({group.email}): {reason}")

    async def _refresh_group(self, group: LoginGroup, result: RefreshResult) -> None:
        log = logger.bind(email=group.email, server=group.server, accounts=len(group.accounts))

        try:
            password = self._cipher.decrypt(group.accounts[0].tl_password_encrypted)
        except DecryptionError as exc:
            log.warning("refresh_group_decrypt_failed", error=str(exc))
            self._fail_group(group, result, f"could not decrypt stored password ({exc})")
            return

        market = group.market
        if len(group.markets) > 1:
            log.warning(
                "refresh_group_mixed_markets",
                markets=sorted(m.value for m in group.markets),
                using=market.value,
            )

        try:
            token = await self._broker.authenticate(group.email, password, group.server, market)
        except BrokerAuthError as exc:
            log.warning("refresh_group_auth_failed", status_code=exc.status_code, error=exc.detail)
            self._fail_group(group, result, f"authentication failed for {group.email} ({exc.detail})")
            return

        try:
            broker_accounts = await self._broker.list_accounts(token, market)
        except BrokerFetchError as exc:
            log.warning("refresh_group_fetch_failed", status_code=exc.status_code, error=exc.detail)
            self._fail_group(group, result, f"could not fetch broker accounts ({exc.detail})")
            return

        for account in group.accounts:
            await self._refresh_account(account, broker_accounts, result)

    async def _refresh_account(
        self,
        account: TradingAccount,
        broker_accounts: Sequence[BrokerAccount],
        result: RefreshResult,
    ) -> None:
        if account.balance_override:
            result.skipped += 1
            return

        try:
            match = match_broker_account(account, broker_accounts)
        except AccountMatchError as exc:
            logger.warning("refresh_account_unmatched", account_id=account.id)
            result.record_failure(str(exc))
            return

        try:
            write = await write_current_balance(
                self._session_factory,
                account.id,
                match.balance,
                updated_at=self._clock(),
            )
        except StoreUpdateError as exc:
            logger.warning("refresh_account_store_failed", account_id=account.id, error=str(exc))
            result.record_failure(f"Account {account.account_number}: failed to save balance ({exc})")
            return

        if write.overridden:
            logger.info("refresh_account_overridden", account_id=account.id)
            result.skipped += 1
            return

        result.updated += 1
        logger.debug("refresh_account_updated", account_id=account.id, balance=match.balance)


__all__ = [
    "AccountMatchError",
    "BalanceRefreshJob",
    "LoginGroup",
    "RefreshResult",
    "group_by_login",
    "match_broker_account",
]
