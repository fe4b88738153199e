"""Behaviour of the balance refresh job against a fake broker."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest
import structlog
from sqlalchemy import Double, delete, update

from backend.competition.app import refresh as refresh_module
from backend.competition.app.accounts import StoreUpdateError, write_current_balance
from backend.competition.app.refresh import BalanceRefreshJob, group_by_login
from backend.competition.db.models import CronLogStatus, TradingAccount
from backend.competition.app.run_log import list_recent_runs

from backend.competition.tests.utils import broker_account, create_account, create_user

FIXED_NOW = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def job(session_factory, cipher, broker_client):
    return BalanceRefreshJob(
        session_factory=session_factory,
        cipher=cipher,
        broker=broker_client,
        clock=lambda: FIXED_NOW,
    )


async def _reload(session_factory, account_id: int) -> TradingAccount:
    async with session_factory() as session:
        return await session.get(TradingAccount, account_id)


async def _latest_run(session_factory):
    async with session_factory() as session:
        runs = await list_recent_runs(session)
    assert len(runs) == 1
    return runs[0]


@pytest.mark.asyncio
async def test_shared_login_authenticates_once(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    first = await create_account(db_session, user, account_number="1001", cipher=cipher, password="pw")
    second = await create_account(db_session, user, account_number="2", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("1001", "1", 10_500.0), broker_account("1002", "2", "9800.5")],
    )

    result = await job.run(trigger="cron")

    assert result.as_response() == {"success": True, "updated": 2, "failed": 0, "total": 2}
    assert len(fake_broker.calls("/auth/jwt/token")) == 1
    assert len(fake_broker.calls("/auth/jwt/all-accounts")) == 1

    refreshed_first = await _reload(session_factory, first.id)
    refreshed_second = await _reload(session_factory, second.id)
    assert refreshed_first.current_balance == 10_500.0
    assert refreshed_second.current_balance == 9_800.5
    assert refreshed_first.last_updated.replace(tzinfo=None) == FIXED_NOW.replace(tzinfo=None)

    run = await _latest_run(session_factory)
    assert run.status is CronLogStatus.COMPLETED
    assert run.accounts_total == 2
    assert run.accounts_updated == 2
    assert run.errors is None
    assert run.details["trigger"] == "cron"
    assert run.details["login_groups"] == 1
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_ineligible_accounts_are_not_counted(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    await create_account(db_session, user, account_number="1", cipher=cipher, is_active=False)
    await create_account(db_session, user, account_number="2", cipher=cipher, balance_override=True)
    await create_account(db_session, user, account_number="3")
    await create_account(db_session, user, account_number="4", cipher=cipher, tl_email=None)
    await create_account(db_session, user, account_number="5", cipher=cipher, tl_server="")

    result = await job.run()

    assert (result.total, result.updated, result.failed) == (0, 0, 0)
    assert fake_broker.requests == []
    run = await _latest_run(session_factory)
    assert run.status is CronLogStatus.COMPLETED
    assert run.accounts_total == 0


@pytest.mark.asyncio
async def test_unmatched_account_fails_without_blocking_others(
    job, db_session, session_factory, cipher, fake_broker
):
    user = await create_user(db_session)
    matched = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    missing = await create_account(
        db_session, user, account_number="777", cipher=cipher, password="pw", current_balance=123.0
    )
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("5551", "1", 11_000)],
    )

    result = await job.run()

    assert (result.updated, result.failed, result.total) == (1, 1, 2)
    assert len(result.errors) == 1
    assert "777" in result.errors[0]
    assert (await _reload(session_factory, matched.id)).current_balance == 11_000.0
    assert (await _reload(session_factory, missing.id)).current_balance == 123.0

    run = await _latest_run(session_factory)
    assert run.status is CronLogStatus.COMPLETED
    assert run.accounts_updated == 1
    assert run.errors == result.errors


@pytest.mark.asyncio
async def test_auth_failure_fails_whole_group_only(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    for number in ("1", "2"):
        await create_account(
            db_session, user, account_number=number, cipher=cipher, password="wrong", tl_email="bad@example.com"
        )
    good = await create_account(
        db_session, user, account_number="9", cipher=cipher, password="pw", tl_email="good@example.com"
    )
    fake_broker.add_login(
        email="good@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("9009", "9", 12_345.67)],
    )

    result = await job.run()

    assert (result.updated, result.failed, result.total) == (1, 2, 3)
    assert all("authentication failed for bad@example.com" in error for error in result.errors)
    assert result.errors[0].startswith("Account 1 (bad@example.com)")
    assert (await _reload(session_factory, good.id)).current_balance == 12_345.67
    assert len(fake_broker.calls("/auth/jwt/all-accounts")) == 1


@pytest.mark.asyncio
async def test_undecryptable_password_fails_group_before_login(
    job, db_session, session_factory, fake_broker
):
    user = await create_user(db_session)
    await create_account(db_session, user, account_number="1", encrypted_password="deadbeef" * 8)

    result = await job.run()

    assert (result.updated, result.failed, result.total) == (0, 1, 1)
    assert "could not decrypt stored password" in result.errors[0]
    assert fake_broker.requests == []


@pytest.mark.asyncio
async def test_account_list_failure_fails_group(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    token = fake_broker.add_login(
        email="trader@example.com", password="pw", server="DEMO-SERVER", accounts=[]
    )
    fake_broker.failing_account_tokens.add(token)

    result = await job.run()

    assert (result.updated, result.failed) == (0, 1)
    assert "HTTP 500: Upstream unavailable" in result.errors[0]


@pytest.mark.asyncio
async def test_group_market_comes_from_first_record(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    await create_account(
        db_session, user, account_number="1", cipher=cipher, password="pw", tl_account_type="demo"
    )
    await create_account(
        db_session, user, account_number="2", cipher=cipher, password="pw", tl_account_type="live"
    )
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("11", "1", 1.0), broker_account("12", "2", 2.0)],
    )

    result = await job.run()

    assert result.updated == 2
    hosts = {request.url.host for request in fake_broker.requests}
    assert hosts == {"demo.tradelocker.com"}


@pytest.mark.asyncio
async def test_zero_balance_is_written(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    account = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 0, balance=5000)],
    )

    result = await job.run()

    assert result.updated == 1
    assert (await _reload(session_factory, account.id)).current_balance == 0.0


@pytest.mark.asyncio
async def test_override_set_mid_run_is_skipped(db_session, session_factory, cipher, broker_client, fake_broker):
    user = await create_user(db_session)
    account = await create_account(
        db_session, user, account_number="1", cipher=cipher, password="pw", current_balance=500.0
    )
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 99_999.0)],
    )

    original_list_accounts = broker_client.list_accounts

    async def list_accounts_then_override(token, market):
        accounts = await original_list_accounts(token, market)
        async with session_factory() as session:
            await session.execute(
                update(TradingAccount)
                .where(TradingAccount.id == account.id)
                .values(balance_override=True, current_balance=750.0)
            )
            await session.commit()
        return accounts

    broker_client.list_accounts = list_accounts_then_override
    job = BalanceRefreshJob(session_factory=session_factory, cipher=cipher, broker=broker_client)

    result = await job.run()

    assert (result.updated, result.failed, result.skipped, result.total) == (0, 0, 1, 1)
    assert (await _reload(session_factory, account.id)).current_balance == 750.0
    run = await _latest_run(session_factory)
    assert run.details["skipped"] == 1


@pytest.mark.asyncio
async def test_unexpected_error_marks_run_failed(db_session, session_factory, cipher, broker_client, fake_broker):
    user = await create_user(db_session)
    await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    fake_broker.add_login(email="trader@example.com", password="pw", server="DEMO-SERVER", accounts=[])

    async def exploding_list_accounts(token, market):
        raise RuntimeError("store connection lost")

    broker_client.list_accounts = exploding_list_accounts
    job = BalanceRefreshJob(session_factory=session_factory, cipher=cipher, broker=broker_client)

    with pytest.raises(RuntimeError, match="store connection lost"):
        await job.run()

    run = await _latest_run(session_factory)
    assert run.status is CronLogStatus.FAILED
    assert run.errors == ["store connection lost"]
    assert run.completed_at is not None


@pytest.mark.asyncio
async def test_write_current_balance_reports_override(db_session, session_factory):
    user = await create_user(db_session)
    account = await create_account(db_session, user, account_number="1", balance_override=True)

    outcome = await write_current_balance(session_factory, account.id, 1.0, updated_at=FIXED_NOW)

    assert not outcome.applied
    assert outcome.overridden


def test_group_by_login_keeps_first_seen_order():
    accounts = [
        TradingAccount(id=1, account_number="1", tl_email="a@x", tl_server="S1"),
        TradingAccount(id=2, account_number="2", tl_email="b@x", tl_server="S1"),
        TradingAccount(id=3, account_number="3", tl_email="a@x", tl_server="S1"),
        TradingAccount(id=4, account_number="4", tl_email="a@x", tl_server="S2"),
    ]

    groups = group_by_login(accounts)

    assert [(g.email, g.server, [a.id for a in g.accounts]) for g in groups] == [
        ("a@x", "S1", [1, 3]),
        ("b@x", "S1", [2]),
        ("a@x", "S2", [4]),
    ]


@pytest.mark.asyncio
async def test_two_logins_one_rejected(db_session, session_factory, cipher, broker_client, fake_broker):
    user = await create_user(db_session)
    by_id = await create_account(
        db_session, user, account_number="700100", cipher=cipher, password="pw-a", tl_email="a@example.com"
    )
    by_index = await create_account(
        db_session, user, account_number="3", cipher=cipher, password="pw-a", tl_email="a@example.com"
    )
    await create_account(
        db_session, user, account_number="55", cipher=cipher, password="pw-b", tl_email="b@example.com"
    )
    fake_broker.add_login(
        email="a@example.com",
        password="pw-a",
        server="DEMO-SERVER",
        accounts=[broker_account("700100", "1", 5_100.0), broker_account("700300", "3", 4_900.0)],
    )
    job = BalanceRefreshJob(session_factory=session_factory, cipher=cipher, broker=broker_client)

    result = await job.run()

    assert (result.updated, result.failed, result.total) == (2, 1, 3)
    assert len(result.errors) == 1
    assert "b@example.com" in result.errors[0]
    assert (await _reload(session_factory, by_id.id)).current_balance == 5_100.0
    assert (await _reload(session_factory, by_index.id)).current_balance == 4_900.0
    run = await _latest_run(session_factory)
    assert run.accounts_updated <= run.accounts_total


@pytest.mark.asyncio
async def test_consecutive_runs_track_broker_balance(
    db_session, session_factory, cipher, broker_client, fake_broker
):
    user = await create_user(db_session)
    account = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    token = fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 5_000.0)],
    )
    ticks = iter(
        [
            datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 12, 15, tzinfo=timezone.utc),
        ]
    )
    current = {"now": None}

    def clock() -> datetime:
        return current["now"]

    job = BalanceRefreshJob(session_factory=session_factory, cipher=cipher, broker=broker_client, clock=clock)

    current["now"] = next(ticks)
    await job.run()
    first = await _reload(session_factory, account.id)

    fake_broker.accounts[token] = [broker_account("100", "1", 5_200.0)]
    current["now"] = next(ticks)
    await job.run()
    second = await _reload(session_factory, account.id)

    assert first.current_balance == 5_000.0
    assert second.current_balance == 5_200.0
    assert second.last_updated > first.last_updated


@pytest.mark.asyncio
@pytest.mark.parametrize("is_active", [True, False])
@pytest.mark.parametrize("show_on_leaderboard", [True, False])
@pytest.mark.parametrize("has_password", [True, False])
async def test_overridden_accounts_are_never_refreshed(
    job, db_session, session_factory, cipher, fake_broker, is_active, show_on_leaderboard, has_password
):
    user = await create_user(db_session)
    account = await create_account(
        db_session,
        user,
        account_number="1",
        cipher=cipher if has_password else None,
        password="pw",
        is_active=is_active,
        show_on_leaderboard=show_on_leaderboard,
        balance_override=True,
        current_balance=321.0,
    )
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 9_999.0)],
    )

    result = await job.run()

    assert result.total == 0
    assert fake_broker.requests == []
    assert (await _reload(session_factory, account.id)).current_balance == 321.0


@pytest.mark.asyncio
async def test_failed_write_only_fails_that_record(
    job, db_session, session_factory, cipher, fake_broker, monkeypatch
):
    user = await create_user(db_session)
    broken = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    healthy = await create_account(db_session, user, account_number="2", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 1_100.0), broker_account("200", "2", 2_200.0)],
    )
    real_write = refresh_module.write_current_balance

    async def write_or_fail(session_factory, account_id, balance, *, updated_at):
        if account_id == broken.id:
            raise StoreUpdateError("disk full")
        return await real_write(session_factory, account_id, balance, updated_at=updated_at)

    monkeypatch.setattr(refresh_module, "write_current_balance", write_or_fail)

    result = await job.run()

    assert (result.updated, result.failed, result.total) == (1, 1, 2)
    assert result.errors == ["Account 1: failed to save balance (disk full)"]
    assert (await _reload(session_factory, broken.id)).current_balance == 10_000.0
    assert (await _reload(session_factory, healthy.id)).current_balance == 2_200.0
    run = await _latest_run(session_factory)
    assert run.status is CronLogStatus.COMPLETED
    assert run.accounts_updated == 1


@pytest.mark.asyncio
async def test_account_deleted_mid_run_counts_as_failed(
    db_session, session_factory, cipher, broker_client, fake_broker
):
    user = await create_user(db_session)
    removed = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    kept = await create_account(db_session, user, account_number="2", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 1_100.0), broker_account("200", "2", 2_200.0)],
    )
    original_list_accounts = broker_client.list_accounts

    async def list_accounts_then_delete(token, market):
        accounts = await original_list_accounts(token, market)
        async with session_factory() as session:
            await session.execute(delete(TradingAccount).where(TradingAccount.id == removed.id))
            await session.commit()
        return accounts

    broker_client.list_accounts = list_accounts_then_delete
    job = BalanceRefreshJob(session_factory=session_factory, cipher=cipher, broker=broker_client)

    result = await job.run()

    assert (result.updated, result.failed, result.skipped, result.total) == (1, 1, 0, 2)
    assert "no longer exists" in result.errors[0]
    assert (await _reload(session_factory, kept.id)).current_balance == 2_200.0


@pytest.mark.asyncio
async def test_write_current_balance_rejects_missing_account(session_factory):
    with pytest.raises(StoreUpdateError, match="no longer exists"):
        await write_current_balance(session_factory, 424242, 1.0, updated_at=FIXED_NOW)


@pytest.mark.asyncio
async def test_balances_keep_full_precision(job, db_session, session_factory, cipher, fake_broker):
    user = await create_user(db_session)
    account = await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", "10250.1234")],
    )

    await job.run()

    assert isinstance(TradingAccount.__table__.c.current_balance.type, Double)
    assert (await _reload(session_factory, account.id)).current_balance == 10_250.1234


@pytest.mark.asyncio
async def test_run_leaves_caller_context_bound(job, db_session, cipher, fake_broker):
    user = await create_user(db_session)
    await create_account(db_session, user, account_number="1", cipher=cipher, password="pw")
    fake_broker.add_login(
        email="trader@example.com",
        password="pw",
        server="DEMO-SERVER",
        accounts=[broker_account("100", "1", 1_000.0)],
    )
    structlog.contextvars.bind_contextvars(request_id="req-42")
    try:
        await job.run(trigger="cron")

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-42"}
    finally:
        structlog.contextvars.unbind_contextvars("request_id")
