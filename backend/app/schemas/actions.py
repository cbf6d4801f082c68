"""
Action history and submission response schemas.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from backend.app.models.action_orm import ActionStatus, ActionType, ItemStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ActionResponse(CamelModel):
    id: str
    user_id: str
    type: ActionType
    source_playlist_id: Optional[str] = None
    target_playlist_id: Optional[str] = None
    status: ActionStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    parent_action_id: Optional[str] = None
    using_fallback: bool = False


class ActionItemResponse(CamelModel):
    id: str
    action_id: str
    type: ActionType
    video_id: Optional[str] = None
    source_playlist_id: Optional[str] = None
    target_playlist_id: Optional[str] = None
    source_playlist_item_id: Optional[str] = None
    target_playlist_item_id: Optional[str] = None
    position: Optional[int] = None
    status: ItemStatus
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class ActionCounts(CamelModel):
    total: int = 0
    success: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.success - self.failed


class OperationResultResponse(CamelModel):
    """What a bulk submission, undo or retry returns."""
    action: ActionResponse
    items: List[ActionItemResponse]
    counts: ActionCounts
    estimated_cost: int
    using_fallback: bool
    idempotent: bool = False


class ActionWithCounts(CamelModel):
    action: ActionResponse
    counts: ActionCounts


class ActionListResponse(CamelModel):
    actions: List[ActionWithCounts]
    next_cursor: Optional[str] = None


class ActionItemsPage(CamelModel):
    items: List[ActionItemResponse]
    next_cursor: Optional[str] = None


class QuotaResponse(CamelModel):
    today_used: int
    today_remaining: int
    today_budget: int
    reset_at: datetime


class VideoOpsResponse(CamelModel):
    total: int
