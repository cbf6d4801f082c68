"""Quota and usage counters."""

from fastapi import APIRouter, Depends, Security
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.core.security import QUOTA_READ, User, get_current_user
from backend.app.schemas.actions import QuotaResponse, VideoOpsResponse
from backend.app.services.usage_recorder import UsageRecorder

router = APIRouter()


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    db: AsyncSession = Depends(get_db),
    current_user: User = Security(get_current_user, scopes=[QUOTA_READ]),
):
    """Today's remote API usage against the daily budget."""
    snapshot = await UsageRecorder(db).get_today_quota(current_user.user_id)
    return QuotaResponse(
        today_used=snapshot.used,
        today_remaining=snapshot.remaining,
        today_budget=snapshot.budget,
        reset_at=snapshot.reset_at,
    )


@router.get("/video-ops", response_model=VideoOpsResponse)
async def get_video_ops(
    db: AsyncSession = Depends(get_db),
    current_user: User = Security(get_current_user, scopes=[QUOTA_READ]),
):
    return VideoOpsResponse(total=await UsageRecorder(db).get_video_ops())
