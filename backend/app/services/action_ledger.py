"""
Action Ledger - Database operations for actions and their items.

Durable record of every bulk request. Item rows leave ``pending`` exactly once
and Actions only move forward: every write is conditional on the stored
status, so the coordinator and the stuck-action sweep cannot overwrite each
other. Counts are always computed from the item table, never cached.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select, func, case, and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.logging import get_logger
from backend.app.models.action_orm import (
    ACTION_STATUS_TRANSITIONS,
    ActionItemORM,
    ActionORM,
    ActionStatus,
    ActionType,
    ItemStatus,
)
from backend.app.schemas.actions import ActionCounts

logger = get_logger(__name__)

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


class ActionNotFoundError(Exception):
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action not found: {action_id}")


class ActionAccessDeniedError(Exception):
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"You do not have access to action {action_id}")


class InvalidStatusTransitionError(Exception):
    pass


class ItemAlreadyClosedError(Exception):
    pass


@dataclass
class NewActionItem:
    """Fields for one item to be created under an action."""
    type: ActionType
    video_id: Optional[str] = None
    source_playlist_id: Optional[str] = None
    target_playlist_id: Optional[str] = None
    source_playlist_item_id: Optional[str] = None
    target_playlist_item_id: Optional[str] = None
    position: Optional[int] = None


@dataclass
class ActionSummary:
    action: ActionORM
    counts: ActionCounts
    items: List[ActionItemORM] = field(default_factory=list)


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_LIMIT
    return max(1, min(MAX_PAGE_LIMIT, int(limit)))


class ActionLedger:
    """Repository for Action and Action Item records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_action(
        self,
        user_id: str,
        type: ActionType,
        action_id: Optional[str] = None,
        source_playlist_id: Optional[str] = None,
        target_playlist_id: Optional[str] = None,
        status: ActionStatus = ActionStatus.PENDING,
        parent_action_id: Optional[str] = None,
    ) -> ActionORM:
        now = datetime.now(timezone.utc)
        action = ActionORM(
            id=action_id or uuid.uuid4().hex,
            user_id=user_id,
            type=type,
            source_playlist_id=source_playlist_id,
            target_playlist_id=target_playlist_id,
            status=status,
            created_at=now,
            updated_at=now,
            parent_action_id=parent_action_id,
        )
        self.session.add(action)
        await self.session.flush()
        return action

    async def create_items(self, action_id: str, items: Iterable[NewActionItem]) -> List[ActionItemORM]:
        """Create items in the given order; ``seq`` records that order."""
        created: List[ActionItemORM] = []
        now = datetime.now(timezone.utc)
        for seq, item in enumerate(items):
            row = ActionItemORM(
                id=str(uuid.uuid4()),
                action_id=action_id,
                seq=seq,
                type=item.type,
                video_id=item.video_id,
                source_playlist_id=item.source_playlist_id,
                target_playlist_id=item.target_playlist_id,
                source_playlist_item_id=item.source_playlist_item_id,
                target_playlist_item_id=item.target_playlist_item_id,
                position=item.position,
                status=ItemStatus.PENDING,
                created_at=now,
            )
            self.session.add(row)
            created.append(row)
        await self.session.flush()
        return created

    async def update_item(
        self,
        item_id: str,
        status: Optional[ItemStatus] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        target_playlist_item_id: Optional[str] = None,
    ) -> ActionItemORM:
        """
        Merge the given fields into an item. Unset arguments keep their stored
        value. A terminal item cannot be rewritten.

        The write only matches a row that is still pending in the database,
        so a stale in-memory copy can never reopen a closed item.
        """
        values = {}
        if status is not None:
            values["status"] = status
        if error_code is not None:
            values["error_code"] = error_code
        if error_message is not None:
            values["error_message"] = error_message
        if target_playlist_item_id is not None:
            values["target_playlist_item_id"] = target_playlist_item_id

        if values:
            result = await self.session.execute(
                update(ActionItemORM)
                .where(ActionItemORM.id == item_id, ActionItemORM.status == ItemStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount
        else:
            matched = None

        item = await self.session.get(ActionItemORM, item_id, populate_existing=True)
        if item is None:
            raise LookupError(f"Action item not found: {item_id}")
        if matched == 0 or (matched is None and item.status.is_terminal):
            raise ItemAlreadyClosedError(f"Item {item_id} is already {item.status.value}")
        return item

    async def set_action_status(
        self,
        action_id: str,
        status: ActionStatus,
        finished_at: Optional[datetime] = None,
    ) -> ActionORM:
        """Move an action forward; the transition is checked against the stored status."""
        allowed_from = [
            current for current, targets in ACTION_STATUS_TRANSITIONS.items() if status in targets
        ]
        values = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if finished_at is not None:
            values["finished_at"] = finished_at

        result = await self.session.execute(
            update(ActionORM)
            .where(ActionORM.id == action_id, ActionORM.status.in_(allowed_from))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        action = await self.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        if result.rowcount == 0:
            raise InvalidStatusTransitionError(
                f"Action {action_id} cannot move from {action.status.value} to {status.value}"
            )
        return action

    async def touch_action(self, action_id: str, now: Optional[datetime] = None) -> bool:
        """Record progress on a running action. False if it is no longer running."""
        result = await self.session.execute(
            update(ActionORM)
            .where(ActionORM.id == action_id, ActionORM.status == ActionStatus.RUNNING)
            .values(updated_at=now or datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def fail_pending_items(self, action_id: str, error_code: str, error_message: str) -> int:
        """Close every still-pending item of an action as failed."""
        result = await self.session.execute(
            update(ActionItemORM)
            .where(
                ActionItemORM.action_id == action_id,
                ActionItemORM.status == ItemStatus.PENDING,
            )
            .values(status=ItemStatus.FAILED, error_code=error_code, error_message=error_message)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def get_action(self, action_id: str) -> Optional[ActionORM]:
        result = await self.session.execute(
            select(ActionORM)
            .where(ActionORM.id == action_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_owned_action(self, action_id: str, user_id: str) -> ActionORM:
        action = await self.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        if action.user_id != user_id:
            raise ActionAccessDeniedError(action_id)
        return action

    async def list_items(self, action_id: str) -> List[ActionItemORM]:
        result = await self.session.execute(
            select(ActionItemORM)
            .where(ActionItemORM.action_id == action_id)
            .order_by(ActionItemORM.seq)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_counts(self, action_id: str) -> ActionCounts:
        result = await self.session.execute(
            select(
                func.count(ActionItemORM.id),
                func.coalesce(func.sum(case((ActionItemORM.status == ItemStatus.SUCCESS, 1), else_=0)), 0),
                func.coalesce(func.sum(case((ActionItemORM.status == ItemStatus.FAILED, 1), else_=0)), 0),
            ).where(ActionItemORM.action_id == action_id)
        )
        total, success, failed = result.one()
        return ActionCounts(total=int(total or 0), success=int(success or 0), failed=int(failed or 0))

    async def get_summary(self, action_id: str) -> Optional[ActionSummary]:
        action = await self.get_action(action_id)
        if action is None:
            return None
        counts = await self.get_counts(action_id)
        items = await self.list_items(action_id)
        return ActionSummary(action=action, counts=counts, items=items)

    async def list_actions(
        self,
        user_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ActionORM], Optional[str]]:
        """
        Page through a user's actions, newest first. ``cursor`` is the id of
        the last action on the previous page.
        """
        limit = clamp_limit(limit)
        conditions = [ActionORM.user_id == user_id]

        if cursor:
            anchor = await self.get_action(cursor)
            if anchor is not None:
                conditions.append(
                    or_(
                        ActionORM.created_at < anchor.created_at,
                        and_(ActionORM.created_at == anchor.created_at, ActionORM.id < anchor.id),
                    )
                )

        result = await self.session.execute(
            select(ActionORM)
            .where(and_(*conditions))
            .order_by(ActionORM.created_at.desc(), ActionORM.id.desc())
            .limit(limit + 1)
        )
        rows = list(result.scalars().all())
        has_more = len(rows) > limit
        page = rows[:limit]
        return page, (page[-1].id if has_more else None)

    async def list_items_page(
        self,
        action_id: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[ActionItemORM], Optional[str]]:
        """Page through an action's items in creation order; ``cursor`` is the last item id."""
        limit = clamp_limit(limit)
        conditions = [ActionItemORM.action_id == action_id]

        if cursor:
            anchor = await self.session.get(ActionItemORM, cursor)
            if anchor is not None and anchor.action_id == action_id:
                conditions.append(ActionItemORM.seq > anchor.seq)

        result = await self.session.execute(
            select(ActionItemORM)
            .where(and_(*conditions))
            .order_by(ActionItemORM.seq)
            .limit(limit + 1)
            .execution_options(populate_existing=True)
        )
        rows = list(result.scalars().all())
        has_more = len(rows) > limit
        page = rows[:limit]
        return page, (page[-1].id if has_more else None)

    async def list_stale_running(self, idle_since: datetime) -> List[ActionORM]:
        """Running actions whose last recorded progress is older than ``idle_since``."""
        result = await self.session.execute(
            select(ActionORM).where(
                ActionORM.status == ActionStatus.RUNNING,
                ActionORM.updated_at < idle_since,
            )
        )
        return list(result.scalars().all())

