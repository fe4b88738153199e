"""Run the balance refresh job once from the command line.

Intended for schedulers that can execute a command instead of calling the
HTTP trigger. Exits non-zero when the job aborts.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[3]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.competition.app.broker import TradeLockerClient  # noqa: E402
from backend.competition.app.config import settings  # noqa: E402
from backend.competition.app.crypto import PasswordCipher  # noqa: E402
from backend.competition.app.logging import get_logger  # noqa: E402
from backend.competition.app.refresh import BalanceRefreshJob  # noqa: E402
from backend.competition.db.base import create_engine, dispose_engine, get_session_factory  # noqa: E402

logger = get_logger("competition.scripts.refresh_balances")


async def refresh(database_url: str, trigger: str) -> dict:
    if not settings.security.encryption_key:
        raise RuntimeError("ENCRYPTION_KEY is not configured")

    create_engine(database_url, echo=settings.sqlalchemy_echo)
    try:
        job = BalanceRefreshJob(
            session_factory=get_session_factory(),
            cipher=PasswordCipher(settings.security.encryption_key),
            broker=TradeLockerClient(settings.broker),
        )
        result = await job.run(trigger=trigger)
    finally:
        await dispose_engine()
    return result.as_response()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh trading account balances")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        default=None,
        help="Database URL (falls back to the configured storage URL)",
    )
    parser.add_argument(
        "--trigger",
        default="cron",
        help="Label stored on the run log row (default: cron)",
    )
    args = parser.parse_args(argv)

    try:
        summary = asyncio.run(refresh(args.database_url or settings.database_url, args.trigger))
    except Exception as exc:
        logger.exception("refresh_balances_cli_failed")
        print(json.dumps({"error": "Failed to refresh balances", "details": str(exc)}))
        return 1

    print(json.dumps(summary))
    return 0


if __name__ == "__main__":
    sys.exit(main())
