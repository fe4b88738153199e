"""Public leaderboard ranked by percentage gain."""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...db.models import CompetitionSettings
from ..accounts import leaderboard_entries
from ..dependencies import get_session
from ..schemas.accounts import CompetitionSettingsResource, LeaderboardEntry, LeaderboardResponse

router = APIRouter(tags=["leaderboard"])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(db: AsyncSession = Depends(get_session)) -> LeaderboardResponse:
    entries = await leaderboard_entries(db)
    result = await db.execute(select(CompetitionSettings).order_by(CompetitionSettings.id.asc()))
    competition = result.scalars().first()
    return LeaderboardResponse(
        entries=[LeaderboardEntry.model_validate(entry) for entry in entries],
        competition=(
            CompetitionSettingsResource.model_validate(competition) if competition else None
        ),
    )
