"""
Usage Recorder.

Accumulates remote API cost per ``(day, scope)`` for visibility. It never
blocks a call: whether quota is left is the remote API's decision, not ours.
Increments are single atomic upserts so concurrent processes cannot lose
updates.

Days are calendar dates in the quota timezone (the remote API resets its
daily quota at Pacific midnight).
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import get_settings
from backend.app.core.database import dialect_insert
from backend.app.core.logging import get_logger
from backend.app.models.usage_orm import GLOBAL_SCOPE, QuotaUsageORM, VideoOpsTotalORM, user_scope

logger = get_logger(__name__)

# Cost units per read method; mutations cost ``mutation_unit_cost``
READ_METHOD_COST = {
    "playlistItems.list": 1,
    "playlists.list": 1,
}
MUTATION_METHODS = frozenset({"playlistItems.insert", "playlistItems.delete"})

VIDEO_OPS_ROW_ID = 1


@dataclass
class QuotaSnapshot:
    used: int
    remaining: int
    budget: int
    reset_at: datetime


def method_cost(method: str) -> int:
    if method in MUTATION_METHODS:
        return get_settings().mutation_unit_cost
    return READ_METHOD_COST.get(method, 0)


def quota_day_key(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> str:
    """YYYY-MM-DD of ``now`` in the quota timezone."""
    tz = ZoneInfo(tz_name or get_settings().quota_timezone)
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).strftime("%Y-%m-%d")


def next_quota_reset(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> datetime:
    """Next midnight in the quota timezone, as an aware datetime."""
    tz = ZoneInfo(tz_name or get_settings().quota_timezone)
    local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
    next_day = (local_now + timedelta(days=1)).date()
    return datetime(next_day.year, next_day.month, next_day.day, tzinfo=tz)


class UsageRecorder:
    def __init__(self, session: AsyncSession, tz_name: Optional[str] = None):
        self.session = session
        self.tz_name = tz_name or get_settings().quota_timezone

    async def record(self, scope: str, units: int, now: Optional[datetime] = None) -> None:
        """Atomically add ``units`` to today's bucket for ``scope``."""
        units = int(units or 0)
        if units <= 0:
            return

        date_key = quota_day_key(now, self.tz_name)
        ts = datetime.now(timezone.utc)
        stmt = dialect_insert(self.session, QuotaUsageORM).values(
            date_key=date_key, scope=scope, used=units, updated_at=ts,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["date_key", "scope"],
            set_={"used": QuotaUsageORM.used + stmt.excluded.used, "updated_at": ts},
        )
        await self.session.execute(stmt)

    async def record_call(self, method: str, user_id: Optional[str] = None, units: Optional[int] = None) -> int:
        """Record one remote call against the global bucket and the user's bucket."""
        cost = method_cost(method) if units is None else units
        await self.record(GLOBAL_SCOPE, cost)
        if user_id:
            await self.record(user_scope(user_id), cost)
        return cost

    async def read_today(self, scope: str, now: Optional[datetime] = None) -> int:
        result = await self.session.execute(
            select(QuotaUsageORM.used).where(
                QuotaUsageORM.date_key == quota_day_key(now, self.tz_name),
                QuotaUsageORM.scope == scope,
            )
        )
        return int(result.scalar_one_or_none() or 0)

    async def get_today_quota(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> QuotaSnapshot:
        """
        Today's usage. The user's own bucket is reported when it has any
        usage, otherwise the global bucket.
        """
        budget = get_settings().daily_quota_budget
        global_used = await self.read_today(GLOBAL_SCOPE, now)
        user_used = await self.read_today(user_scope(user_id), now) if user_id else 0
        used = user_used if user_used > 0 else global_used
        return QuotaSnapshot(
            used=used,
            remaining=max(0, budget - used),
            budget=budget,
            reset_at=next_quota_reset(now, self.tz_name),
        )

    async def prune_before(self, date_key: str) -> int:
        """Delete day buckets strictly older than ``date_key``."""
        result = await self.session.execute(
            delete(QuotaUsageORM).where(QuotaUsageORM.date_key < date_key)
        )
        return result.rowcount or 0

    async def add_video_ops(self, delta: int) -> int:
        """Add to the global video-ops total; returns the new total."""
        delta = int(delta or 0)
        if delta <= 0:
            return await self.get_video_ops()

        ts = datetime.now(timezone.utc)
        stmt = dialect_insert(self.session, VideoOpsTotalORM).values(
            id=VIDEO_OPS_ROW_ID, total=delta, updated_at=ts,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"total": VideoOpsTotalORM.total + stmt.excluded.total, "updated_at": ts},
        )
        await self.session.execute(stmt)
        return await self.get_video_ops()

    async def get_video_ops(self) -> int:
        result = await self.session.execute(
            select(VideoOpsTotalORM.total).where(VideoOpsTotalORM.id == VIDEO_OPS_ROW_ID)
        )
        return int(result.scalar_one_or_none() or 0)
