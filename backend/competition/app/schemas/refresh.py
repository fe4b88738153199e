"""Pydantic models for the balance refresh endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from ...db.models import CronLogStatus


class RefreshSummary(BaseModel):
    """Response schema for ``/refresh-balances``."""

    success: bool = True
    updated: int
    failed: int
    total: int
    errors: Optional[List[str]] = None


class RefreshFailure(BaseModel):
    """Body returned when the job aborts."""

    error: str = "Failed to refresh balances"
    details: str


class CronLogResource(BaseModel):
    """A single run log row as shown in the admin console."""

    id: int
    job_name: str
    status: CronLogStatus
    accounts_total: int
    accounts_updated: int
    errors: Optional[List[str]] = None
    details: Dict[str, Any] = {}
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
