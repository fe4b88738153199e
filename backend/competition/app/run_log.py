"""Utilities for recording scheduled job executions."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import CronLog, CronLogStatus
from ..db.session import SessionFactory, session_scope
from .logging import get_logger


logger = get_logger("competition.run_log")

REFRESH_BALANCES_JOB = "refresh_balances"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunLogRecorder:
    """Write the two rows describing one job execution.

    ``start`` inserts a ``started`` row and ``complete``/``fail`` perform the
    single terminal update. Each write commits on its own session so the
    ``started`` row is visible while the job is still running.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        job_name: str = REFRESH_BALANCES_JOB,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._job_name = job_name
        self._clock = clock

    async def start(
        self,
        *,
        accounts_total: int,
        details: Mapping[str, Any] | None = None,
    ) -> int:
        """Insert a ``started`` row and return its id."""

        async with session_scope(self._session_factory) as session:
            entry = CronLog(
                job_name=self._job_name,
                status=CronLogStatus.STARTED,
                accounts_total=accounts_total,
                accounts_updated=0,
                errors=None,
                details=dict(details or {}),
                created_at=self._clock(),
            )
            session.add(entry)
            await session.flush()
            run_log_id = entry.id
        logger.info("cron_log_started", run_log_id=run_log_id, job_name=self._job_name)
        return run_log_id

    async def _finish(
        self,
        run_log_id: int,
        *,
        status: CronLogStatus,
        accounts_updated: int | None,
        errors: Sequence[str],
        details: Mapping[str, Any] | None,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            entry = await session.get(CronLog, run_log_id)
            if entry is None:
                raise LookupError(f"cron log {run_log_id} does not exist")
            entry.status = status
            if accounts_updated is not None:
                entry.accounts_updated = accounts_updated
            entry.errors = list(errors) or None
            if details:
                entry.details = {**(entry.details or {}), **details}
            entry.completed_at = self._clock()

    async def complete(
        self,
        run_log_id: int,
        *,
        accounts_updated: int,
        errors: Sequence[str],
        details: Mapping[str, Any] | None = None,
    ) -> None:
        await self._finish(
            run_log_id,
            status=CronLogStatus.COMPLETED,
            accounts_updated=accounts_updated,
            errors=errors,
            details=details,
        )
        logger.info(
            "cron_log_completed",
            run_log_id=run_log_id,
            accounts_updated=accounts_updated,
            error_count=len(errors),
        )

    async def fail(
        self,
        run_log_id: int,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        await self._finish(
            run_log_id,
            status=CronLogStatus.FAILED,
            accounts_updated=None,
            errors=[message],
            details=details,
        )
        logger.warning("cron_log_failed", run_log_id=run_log_id, error=message)


async def list_recent_runs(
    session: AsyncSession,
    *,
    job_name: str | None = None,
    limit: int = 50,
) -> list[CronLog]:
    """Return the newest run log rows first."""

    stmt = select(CronLog).order_by(CronLog.created_at.desc(), CronLog.id.desc()).limit(limit)
    if job_name is not None:
        stmt = stmt.where(CronLog.job_name == job_name)
    result = await session.execute(stmt)
    return list(result.scalars().all())


__all__ = ["REFRESH_BALANCES_JOB", "RunLogRecorder", "list_recent_runs"]
