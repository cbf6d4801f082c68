"""Models package."""

from backend.app.models.action_orm import (
    ActionItemORM,
    ActionORM,
    ActionStatus,
    ActionType,
    ItemStatus,
)
from backend.app.models.idempotency_orm import IdempotencyKeyORM
from backend.app.models.usage_orm import QuotaUsageORM, VideoOpsTotalORM
from backend.app.models.user_token_orm import UserTokenORM

__all__ = [
    "ActionItemORM",
    "ActionORM",
    "ActionStatus",
    "ActionType",
    "ItemStatus",
    "IdempotencyKeyORM",
    "QuotaUsageORM",
    "VideoOpsTotalORM",
    "UserTokenORM",
]
