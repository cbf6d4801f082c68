"""
Undo / Retry Reconstructor.

Derives a corrective payload purely from the persisted Items of a finished
Action and submits it through the coordinator as a brand-new Action whose
``parent_action_id`` points at the original. History is never rewritten.
"""
from typing import List, Optional

from backend.app.core.logging import get_logger
from backend.app.models.action_orm import ActionItemORM, ActionORM, ActionType, ItemStatus
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkPayload, BulkRemovePayload, MoveEntry
from backend.app.services.bulk_coordinator import BulkMutationCoordinator, OperationResult

logger = get_logger(__name__)


class ActionNotTerminalError(Exception):
    """Undo/retry requested while the original Action is still executing."""

    def __init__(self, action_id: str, status: str):
        self.action_id = action_id
        self.status = status
        super().__init__(f"Action {action_id} is still {status}")


def _succeeded(items: List[ActionItemORM]) -> List[ActionItemORM]:
    return [item for item in items if item.status == ItemStatus.SUCCESS]


def _failed(items: List[ActionItemORM]) -> List[ActionItemORM]:
    return [item for item in items if item.status == ItemStatus.FAILED]


def build_undo_payload(action: ActionORM, items: List[ActionItemORM]) -> Optional[BulkPayload]:
    """
    Inverse batch for ``action``, or None when it has no defined inverse or
    nothing to invert.
    """
    done = _succeeded(items)

    if action.type == ActionType.ADD:
        added = [item for item in done if item.target_playlist_item_id]
        if not added:
            return None
        target = action.target_playlist_id or added[0].target_playlist_id
        return BulkRemovePayload(
            playlist_item_ids=[item.target_playlist_item_id for item in added],
            source_playlist_id=target,
            video_ids={item.target_playlist_item_id: item.video_id for item in added if item.video_id} or None,
        )

    if action.type == ActionType.REMOVE:
        removed = [item for item in done if item.video_id]
        sources = {item.source_playlist_id for item in items if item.source_playlist_id}
        if action.source_playlist_id:
            sources.add(action.source_playlist_id)
        if len(sources) != 1 or not removed:
            # Inverse target would be ambiguous or unknown
            return None
        return BulkAddPayload(
            target_playlist_id=sources.pop(),
            video_ids=[item.video_id for item in removed],
        )

    if action.type == ActionType.MOVE:
        moved = [item for item in done if item.target_playlist_item_id and item.video_id]
        if not moved or not action.source_playlist_id or not action.target_playlist_id:
            return None
        return BulkMovePayload(
            source_playlist_id=action.target_playlist_id,
            target_playlist_id=action.source_playlist_id,
            items=[
                MoveEntry(playlist_item_id=item.target_playlist_item_id, video_id=item.video_id)
                for item in moved
            ],
        )

    return None


def build_retry_payload(action: ActionORM, items: List[ActionItemORM]) -> Optional[BulkPayload]:
    """Same-type batch holding only the failed Items, or None if none failed."""
    failed = _failed(items)
    if not failed:
        return None

    if action.type == ActionType.ADD:
        video_ids = [item.video_id for item in failed if item.video_id]
        target = action.target_playlist_id or failed[0].target_playlist_id
        if not video_ids or not target:
            return None
        return BulkAddPayload(target_playlist_id=target, video_ids=video_ids)

    if action.type == ActionType.REMOVE:
        retryable = [item for item in failed if item.source_playlist_item_id]
        if not retryable:
            return None
        return BulkRemovePayload(
            playlist_item_ids=[item.source_playlist_item_id for item in retryable],
            source_playlist_id=action.source_playlist_id,
            video_ids={item.source_playlist_item_id: item.video_id for item in retryable if item.video_id} or None,
        )

    if action.type == ActionType.MOVE:
        retryable = [item for item in failed if item.source_playlist_item_id and item.video_id]
        if not retryable or not action.source_playlist_id or not action.target_playlist_id:
            return None
        return BulkMovePayload(
            source_playlist_id=action.source_playlist_id,
            target_playlist_id=action.target_playlist_id,
            items=[
                # A confirmed target copy is carried over so it is not inserted twice
                MoveEntry(
                    playlist_item_id=item.source_playlist_item_id,
                    video_id=item.video_id,
                    target_playlist_item_id=item.target_playlist_item_id,
                )
                for item in retryable
            ],
        )

    return None


class ActionReconstructor:
    def __init__(self, coordinator: BulkMutationCoordinator):
        self.coordinator = coordinator
        self.ledger = coordinator.ledger

    async def _load_finished(self, action_id: str, user_id: str):
        action = await self.ledger.get_owned_action(action_id, user_id)
        if not action.status.is_terminal:
            raise ActionNotTerminalError(action_id, action.status.value)
        items = await self.ledger.list_items(action_id)
        return action, items

    async def undo(self, action_id: str, user_id: str) -> Optional[OperationResult]:
        action, items = await self._load_finished(action_id, user_id)
        payload = build_undo_payload(action, items)
        if payload is None:
            logger.info(f"Action {action_id} ({action.type.value}) has nothing to undo")
            return None

        logger.info(f"Undoing action {action_id}")
        return await self.coordinator.execute(payload, user_id=user_id, parent_action_id=action_id)

    async def retry_failed(self, action_id: str, user_id: str) -> Optional[OperationResult]:
        action, items = await self._load_finished(action_id, user_id)
        payload = build_retry_payload(action, items)
        if payload is None:
            logger.info(f"Action {action_id} has no failed items to retry")
            return None

        logger.info(f"Retrying failed items of action {action_id}")
        return await self.coordinator.execute(payload, user_id=user_id, parent_action_id=action_id)
