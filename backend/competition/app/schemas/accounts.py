"""Pydantic models for trading account and leaderboard endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TradingAccountResource(BaseModel):
    """Trading account without credential material."""

    id: int
    user_id: int
    account_number: str
    account_name: Optional[str] = None
    tl_email: Optional[str] = None
    tl_server: Optional[str] = None
    tl_account_type: Optional[str] = None
    starting_balance: float
    current_balance: float
    currency: Optional[str] = None
    is_active: bool
    balance_override: bool
    show_on_leaderboard: bool
    last_updated: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LeaderboardEntry(BaseModel):
    rank: int
    username: Optional[str] = None
    account_id: int
    account_number: str
    account_name: Optional[str] = None
    starting_balance: float
    current_balance: float
    profit: float
    percentage_change: float
    currency: Optional[str] = None
    is_active: bool
    last_updated: Optional[datetime] = None


class CompetitionSettingsResource(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    referral_link: Optional[str] = Field(default=None, max_length=2048)

    model_config = ConfigDict(from_attributes=True)


class LeaderboardResponse(BaseModel):
    """Response schema for ``GET /leaderboard``."""

    entries: List[LeaderboardEntry]
    competition: Optional[CompetitionSettingsResource] = None


class LinkedBrokerAccount(BaseModel):
    """One broker account picked in the linking form."""

    account_number: str = Field(min_length=1, max_length=64)
    account_name: Optional[str] = Field(default=None, max_length=120)
    balance: float = 0.0
    currency: Optional[str] = Field(default=None, max_length=8)


class AccountLinkRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    server: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1)
    account_type: Literal["live", "demo"] = "live"
    accounts: List[LinkedBrokerAccount] = Field(min_length=1)

    model_config = ConfigDict(extra="forbid")


class AccountUpdateRequest(BaseModel):
    account_name: Optional[str] = Field(default=None, max_length=120)
    show_on_leaderboard: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class UserResource(BaseModel):
    """Participant together with the accounts they linked."""

    id: int
    username: str
    email: Optional[str] = None
    is_admin: bool
    created_at: Optional[datetime] = None
    trading_accounts: List[TradingAccountResource] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
