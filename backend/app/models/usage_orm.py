"""
Remote API usage ORM.

``QuotaUsageORM`` is an append-only accumulation ledger keyed by
``(date_key, scope)`` where scope is ``global`` or ``user:<id>``. Rows are only
incremented, never decremented; old days are pruned by retention.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, PrimaryKeyConstraint

from backend.app.core.database import Base

GLOBAL_SCOPE = "global"
USER_SCOPE_PREFIX = "user:"


def user_scope(user_id: str) -> str:
    return f"{USER_SCOPE_PREFIX}{user_id}"


class QuotaUsageORM(Base):
    __tablename__ = "quota_usage"

    date_key = Column(String(10), nullable=False)  # YYYY-MM-DD in the quota timezone
    scope = Column(String(320), nullable=False)
    used = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        PrimaryKeyConstraint("date_key", "scope"),
    )

    def __repr__(self):
        return f"<QuotaUsage {self.date_key}/{self.scope} used={self.used}>"


class VideoOpsTotalORM(Base):
    """Single-row running total of videos operated on across all users."""
    __tablename__ = "video_ops_totals"

    id = Column(Integer, primary_key=True)
    total = Column(BigInteger().with_variant(Integer, "sqlite"), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
