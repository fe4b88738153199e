"""SQLAlchemy ORM models for the competition data store."""
from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Double,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class CronLogStatus(str, enum.Enum):
    """Lifecycle status of a scheduled job execution."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Double()


class User(Base):
    """Competition participant."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    is_admin: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    trading_accounts: Mapped[List["TradingAccount"]] = relationship(
        "TradingAccount", back_populates="user", cascade="all, delete-orphan"
    )


class TradingAccount(Base):
    """Linked brokerage account together with its stored broker credentials."""

    __tablename__ = "trading_accounts"
    __table_args__ = (
        Index("ix_trading_accounts_user_id", "user_id"),
        Index("ix_trading_accounts_refresh", "is_active", "balance_override"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    account_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default="tradelocker", server_default="tradelocker"
    )
    tl_email: Mapped[Optional[str]] = mapped_column(String(320))
    tl_server: Mapped[Optional[str]] = mapped_column(String(128))
    tl_password_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    tl_account_type: Mapped[Optional[str]] = mapped_column(String(16))
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(120))
    starting_balance: Mapped[float] = mapped_column(
        Money, nullable=False, default=0.0, server_default=text("0")
    )
    current_balance: Mapped[float] = mapped_column(
        Money, nullable=False, default=0.0, server_default=text("0")
    )
    currency: Mapped[Optional[str]] = mapped_column(String(8), default="USD")
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    balance_override: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    show_on_leaderboard: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    last_updated: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    user: Mapped[User] = relationship("User", back_populates="trading_accounts")

    @property
    def has_credentials(self) -> bool:
        """Return ``True`` when the record carries everything needed to log in."""

        return bool(self.tl_email and self.tl_server and self.tl_password_encrypted)

    @property
    def percentage_change(self) -> float:
        if not self.starting_balance:
            return 0.0
        return (self.current_balance - self.starting_balance) / self.starting_balance * 100


class CronLog(Base):
    """One execution of a scheduled job."""

    __tablename__ = "cron_logs"
    __table_args__ = (
        Index("ix_cron_logs_job_name_created_at", "job_name", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[CronLogStatus] = mapped_column(
        Enum(
            CronLogStatus,
            name="cron_log_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CronLogStatus.STARTED,
    )
    accounts_total: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    accounts_updated: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    errors: Mapped[Optional[List[str]]] = mapped_column(JSONType)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class CompetitionSettings(Base):
    """Competition window and referral link shown to participants."""

    __tablename__ = "competition_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    referral_link: Mapped[Optional[str]] = mapped_column(Text)


__all__ = [
    "CompetitionSettings",
    "CronLog",
    "CronLogStatus",
    "TradingAccount",
    "User",
]
