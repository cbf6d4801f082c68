"""
Bulk Mutation Coordinator

Turns one validated bulk payload into an Action with one Item per distinct
element, drives every Item through the remote API one call at a time, and
finalizes the Action from the Item table.

Execution rules:
- Item failures never abort the batch; every Item is attempted and recorded.
- MOVE inserts into the target for every Item first, then deletes from the
  source only for Items whose insert was confirmed.
- REMOVE treats "not found" as success: the item is already absent.
- Without a remote client (fallback mode) every Item succeeds immediately
  with a placeholder id and no remote call is made.
"""
import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import get_settings
from backend.app.core.logging import get_logger, action_id_ctx
from backend.app.core.resilience import RetryPolicy, with_retry
from backend.app.models.action_orm import ActionItemORM, ActionORM, ActionStatus, ActionType, ItemStatus
from backend.app.schemas.actions import ActionCounts
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkPayload, BulkRemovePayload
from backend.app.services.action_ledger import (
    ActionLedger,
    InvalidStatusTransitionError,
    ItemAlreadyClosedError,
    NewActionItem,
)
from backend.app.services.idempotency import IdempotencyConflictError, IdempotencyGate
from backend.app.services.remote_client import (
    PlaylistMutationClient,
    RemoteClientProvider,
    is_not_found_error,
    is_retryable_remote_error,
    parse_remote_error,
)
from backend.app.services.usage_recorder import UsageRecorder

logger = get_logger(__name__)

# Item error codes assigned by the coordinator itself
MISSING_VIDEO_ID = "MISSING_VIDEO_ID"
MISSING_TARGET_ID = "MISSING_TARGET_ID"
MISSING_SOURCE_ID = "MISSING_SOURCE_ID"
MISSING_PLAYLIST_ITEM_ID = "MISSING_PLAYLIST_ITEM_ID"
DELETE_FAILED = "DELETE_FAILED"
ITEM_NOT_ATTEMPTED = "ITEM_NOT_ATTEMPTED"


class BulkValidationError(Exception):
    """Payload rejected before any Action is created."""
    pass


@dataclass(frozen=True)
class PacingPolicy:
    """Inter-call delays and the size of the in-flight window for one Action."""
    add_delay_ms: int = 100
    insert_delay_ms: int = 120
    delete_delay_ms: int = 80
    concurrency_window: int = 1

    @classmethod
    def from_settings(cls, settings) -> "PacingPolicy":
        return cls(
            add_delay_ms=settings.pacing_add_delay_ms,
            insert_delay_ms=settings.pacing_insert_delay_ms,
            delete_delay_ms=settings.pacing_delete_delay_ms,
            concurrency_window=settings.bulk_concurrency_window,
        )


@dataclass
class OperationResult:
    action: ActionORM
    items: List[ActionItemORM]
    counts: ActionCounts
    estimated_cost: int
    using_fallback: bool
    idempotent: bool = False


@dataclass
class _ItemOutcome:
    ok: bool
    remote_item_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class _ExecutionContext:
    user_id: str
    client: Optional[PlaylistMutationClient]
    inserted: List[ActionItemORM] = field(default_factory=list)
    # Set once another writer (the stuck-action sweep) has closed this Action
    superseded: bool = False


def estimate_cost(action_type: ActionType, item_count: int, unit_cost: Optional[int] = None) -> int:
    """Fixed per-item cost, doubled for MOVE (insert + delete)."""
    unit = get_settings().mutation_unit_cost if unit_cost is None else unit_cost
    calls_per_item = 2 if action_type == ActionType.MOVE else 1
    return item_count * unit * calls_per_item


def compute_final_status(counts: ActionCounts) -> ActionStatus:
    if counts.total == 0 or counts.failed == 0:
        return ActionStatus.SUCCESS
    if counts.failed == counts.total:
        return ActionStatus.FAILED
    return ActionStatus.PARTIAL


def payload_action_type(payload: BulkPayload) -> ActionType:
    if isinstance(payload, BulkAddPayload):
        return ActionType.ADD
    if isinstance(payload, BulkRemovePayload):
        return ActionType.REMOVE
    if isinstance(payload, BulkMovePayload):
        return ActionType.MOVE
    raise BulkValidationError(f"Unsupported payload type: {type(payload).__name__}")


def validate_payload(payload: BulkPayload) -> None:
    """Semantic checks that must hold before any side effect."""
    action_type = payload_action_type(payload)

    if action_type == ActionType.ADD:
        if not payload.target_playlist_id:
            raise BulkValidationError("targetPlaylistId is required")
        if not payload.video_ids:
            raise BulkValidationError("Provide at least one video ID")
    elif action_type == ActionType.REMOVE:
        if not payload.playlist_item_ids:
            raise BulkValidationError("Provide at least one playlist item ID")
    else:
        if not payload.items:
            raise BulkValidationError("Provide at least one playlist item to move")
        if not payload.source_playlist_id or not payload.target_playlist_id:
            raise BulkValidationError("sourcePlaylistId and targetPlaylistId are required")
        if payload.source_playlist_id == payload.target_playlist_id:
            raise BulkValidationError("Source and target playlists must differ")


def _dedupe(values: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(values))


def build_items(payload: BulkPayload) -> List[NewActionItem]:
    """One item per distinct requested element, in request order."""
    action_type = payload_action_type(payload)

    if action_type == ActionType.ADD:
        return [
            NewActionItem(type=ActionType.ADD, video_id=video_id, target_playlist_id=payload.target_playlist_id)
            for video_id in _dedupe(payload.video_ids)
        ]

    if action_type == ActionType.REMOVE:
        video_ids = payload.video_ids or {}
        return [
            NewActionItem(
                type=ActionType.REMOVE,
                source_playlist_id=payload.source_playlist_id,
                source_playlist_item_id=item_id,
                video_id=video_ids.get(item_id),
            )
            for item_id in _dedupe(payload.playlist_item_ids)
        ]

    entries: Dict[str, object] = {}
    for entry in payload.items:
        entries.setdefault(entry.playlist_item_id, entry)
    return [
        NewActionItem(
            type=ActionType.MOVE,
            video_id=entry.video_id,
            source_playlist_id=payload.source_playlist_id,
            target_playlist_id=payload.target_playlist_id,
            source_playlist_item_id=entry.playlist_item_id,
            target_playlist_item_id=entry.target_playlist_item_id,
        )
        for entry in entries.values()
    ]


def placeholder_item_id(video_id: Optional[str] = None) -> str:
    if video_id:
        return f"mock-{video_id}"
    return f"mock-{secrets.token_hex(4)}"


class BulkMutationCoordinator:
    """Orchestrates one bulk Action from submission to finalization."""

    def __init__(
        self,
        session: AsyncSession,
        client_provider: Optional[RemoteClientProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        pacing: Optional[PacingPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.session = session
        self.ledger = ActionLedger(session)
        self.gate = IdempotencyGate(session)
        self.usage = UsageRecorder(session)
        self.client_provider = client_provider or RemoteClientProvider(session)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.pacing = pacing or PacingPolicy.from_settings(settings)
        self._sleep = sleep
        # One AsyncSession per coordinator; serialise its use when the window is > 1
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        payload: BulkPayload,
        user_id: str,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        """
        Execute a client submission, honouring its idempotency key.

        A key that is already claimed by the same user returns the existing
        Action's summary without creating anything or calling the remote API.
        """
        key = idempotency_key or payload.idempotency_key
        validate_payload(payload)

        if key:
            replay = await self.replay(key, user_id)
            if replay is not None:
                return replay

        try:
            return await self.execute(payload, user_id=user_id, action_id=key, idempotency_key=key)
        except IntegrityError:
            if not key:
                raise
            # Another submission with the same key created the Action first
            await self.session.rollback()
            logger.info(f"Concurrent submission detected for idempotency key {key}")
            replay = await self.replay(key, user_id)
            if replay is None:
                raise IdempotencyConflictError(key)
            return replay

    async def replay(self, key: str, user_id: str) -> Optional[OperationResult]:
        """Summary of the Action already claimed by ``key``, or None if unclaimed."""
        registered = await self.gate.check_key(key)
        action = await self.ledger.get_action(key)
        if not registered and action is None:
            return None

        owner = action.user_id if action is not None else await self.gate.get_owner(key)
        if owner != user_id or action is None:
            raise IdempotencyConflictError(key)

        summary = await self.ledger.get_summary(key)
        logger.info(
            f"Idempotent replay of action {key}",
            extra={"extra_data": {"status": summary.action.status.value}},
        )
        return OperationResult(
            action=summary.action,
            items=summary.items,
            counts=summary.counts,
            estimated_cost=estimate_cost(summary.action.type, summary.counts.total),
            using_fallback=bool(summary.action.using_fallback),
            idempotent=True,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        payload: BulkPayload,
        user_id: str,
        action_id: Optional[str] = None,
        parent_action_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        validate_payload(payload)
        action_type = payload_action_type(payload)
        new_items = build_items(payload)

        action, items = await self._open_action(
            action_type=action_type,
            user_id=user_id,
            action_id=action_id,
            source_playlist_id=getattr(payload, "source_playlist_id", None),
            target_playlist_id=getattr(payload, "target_playlist_id", None),
            parent_action_id=parent_action_id,
            idempotency_key=idempotency_key,
            new_items=new_items,
        )

        ctx_token = action_id_ctx.set(action.id)
        client = None
        try:
            client = await self.client_provider.get_client(user_id)
            using_fallback = client is None
            logger.info(
                f"Executing {action_type.value} action {action.id}",
                extra={"extra_data": {"items": len(items), "using_fallback": using_fallback}},
            )

            ctx = _ExecutionContext(user_id=user_id, client=client)
            if using_fallback:
                await self._run_fallback(ctx, action, items)
            else:
                if action_type == ActionType.ADD:
                    await self._run_add(ctx, items)
                elif action_type == ActionType.REMOVE:
                    await self._run_remove(ctx, items)
                else:
                    await self._run_move(ctx, items)

            return await self._finalize(action, using_fallback)
        finally:
            action_id_ctx.reset(ctx_token)
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()

    async def _open_action(
        self,
        action_type: ActionType,
        user_id: str,
        action_id: Optional[str],
        source_playlist_id: Optional[str],
        target_playlist_id: Optional[str],
        parent_action_id: Optional[str],
        idempotency_key: Optional[str],
        new_items: List[NewActionItem],
    ):
        action = await self.ledger.create_action(
            user_id=user_id,
            type=action_type,
            action_id=action_id,
            source_playlist_id=source_playlist_id,
            target_playlist_id=target_playlist_id,
            status=ActionStatus.PENDING,
            parent_action_id=parent_action_id,
        )
        await self.ledger.set_action_status(action.id, ActionStatus.RUNNING)

        # Claimed at start, not at completion
        if idempotency_key:
            already = await self.gate.register_key(idempotency_key, user_id)
            if already:
                logger.warning(f"Idempotency key {idempotency_key} was registered without its action")

        items = await self.ledger.create_items(action.id, new_items)
        await self.session.commit()
        return action, items

    async def _run_fallback(self, ctx: _ExecutionContext, action: ActionORM, items: List[ActionItemORM]) -> None:
        async with self._write_lock:
            action.using_fallback = True
            for item in items:
                target_id = None
                if item.type in (ActionType.ADD, ActionType.MOVE):
                    target_id = item.target_playlist_item_id or placeholder_item_id(item.video_id)
                try:
                    await self.ledger.update_item(item.id, status=ItemStatus.SUCCESS, target_playlist_item_id=target_id)
                except ItemAlreadyClosedError:
                    logger.warning(f"Action {action.id} was closed by another writer during fallback execution")
                    ctx.superseded = True
                    break
            await self.session.commit()

    async def _run_add(self, ctx: _ExecutionContext, items: List[ActionItemORM]) -> None:
        async def step(item: ActionItemORM) -> None:
            if not item.video_id:
                await self._close_item(ctx, item, _ItemOutcome(False, error_code=MISSING_VIDEO_ID, error_message="Missing video id"))
                return
            if not item.target_playlist_id:
                await self._close_item(ctx, item, _ItemOutcome(False, error_code=MISSING_TARGET_ID, error_message="Missing target playlist id"))
                return

            outcome = await self._insert(ctx, item)
            if outcome.ok:
                outcome.remote_item_id = outcome.remote_item_id or placeholder_item_id()
            else:
                logger.error(f"Failed to add video {item.video_id} to playlist: {outcome.error_code}")
            await self._close_item(ctx, item, outcome)

        await self._run_paced(ctx, items, step, self.pacing.add_delay_ms)

    async def _run_remove(self, ctx: _ExecutionContext, items: List[ActionItemORM]) -> None:
        async def step(item: ActionItemORM) -> None:
            if not item.source_playlist_item_id:
                await self._close_item(
                    ctx,
                    item,
                    _ItemOutcome(False, error_code=MISSING_PLAYLIST_ITEM_ID, error_message="Missing playlist item identifier"),
                )
                return

            outcome = await self._delete(ctx, item, treat_not_found_as_success=True)
            if not outcome.ok:
                outcome.error_code = outcome.error_code or DELETE_FAILED
                outcome.error_message = outcome.error_message or "Failed to delete playlist item"
                logger.error(f"Failed to remove playlist item {item.source_playlist_item_id}: {outcome.error_code}")
            await self._close_item(ctx, item, outcome)

        await self._run_paced(ctx, items, step, self.pacing.delete_delay_ms)

    async def _run_move(self, ctx: _ExecutionContext, items: List[ActionItemORM]) -> None:
        # Phase 1: insert into the target for every item independently
        async def insert_step(item: ActionItemORM) -> None:
            if item.target_playlist_item_id:
                # Target copy already confirmed (retry of a half-finished move)
                ctx.inserted.append(item)
                return
            if not item.video_id:
                await self._close_item(ctx, item, _ItemOutcome(False, error_code=MISSING_VIDEO_ID, error_message="Missing video id"))
                return

            outcome = await self._insert(ctx, item)
            if not outcome.ok:
                logger.error(f"Failed to insert playlist item while moving: {outcome.error_code}")
                await self._close_item(ctx, item, outcome)
                return

            async with self._write_lock:
                try:
                    await self.ledger.update_item(
                        item.id, target_playlist_item_id=outcome.remote_item_id or placeholder_item_id()
                    )
                except ItemAlreadyClosedError:
                    logger.warning(f"Item {item.id} was closed by another writer after its insert")
                    ctx.superseded = True
                else:
                    await self.ledger.touch_action(item.action_id)
                    ctx.inserted.append(item)
                await self.session.commit()

        await self._run_paced(ctx, items, insert_step, self.pacing.insert_delay_ms)

        # Phase 2: delete from the source only where the insert succeeded
        confirmed = sorted(ctx.inserted, key=lambda i: i.seq)

        async def delete_step(item: ActionItemORM) -> None:
            if not item.source_playlist_item_id:
                await self._close_item(
                    ctx,
                    item,
                    _ItemOutcome(False, error_code=MISSING_SOURCE_ID, error_message="Missing source playlist item id"),
                )
                return

            outcome = await self._delete(ctx, item, treat_not_found_as_success=False)
            if not outcome.ok:
                outcome.error_code = outcome.error_code or DELETE_FAILED
                outcome.error_message = outcome.error_message or "Failed to delete source playlist item"
                logger.error(f"Failed to delete source playlist item during move: {outcome.error_code}")
            await self._close_item(ctx, item, outcome)

        await self._run_paced(ctx, confirmed, delete_step, self.pacing.delete_delay_ms)

    # ------------------------------------------------------------------
    # Single remote steps
    # ------------------------------------------------------------------

    async def _insert(self, ctx: _ExecutionContext, item: ActionItemORM) -> _ItemOutcome:
        async with self._write_lock:
            await self.usage.record_call("playlistItems.insert", ctx.user_id)

        try:
            remote_id = await with_retry(
                lambda: ctx.client.insert(item.target_playlist_id, item.video_id),
                should_retry=is_retryable_remote_error,
                policy=self.retry_policy,
                sleep=self._sleep,
                label=f"playlistItems.insert[{item.id}]",
            )
        except Exception as e:
            code, message = parse_remote_error(e)
            logger.warning(
                f"Insert failed for item {item.id}",
                extra={"extra_data": {"item_id": item.id, "error_code": code}},
                exc_info=True,
            )
            return _ItemOutcome(False, error_code=code, error_message=message)
        return _ItemOutcome(True, remote_item_id=remote_id)

    async def _delete(
        self,
        ctx: _ExecutionContext,
        item: ActionItemORM,
        treat_not_found_as_success: bool,
    ) -> _ItemOutcome:
        async with self._write_lock:
            await self.usage.record_call("playlistItems.delete", ctx.user_id)

        try:
            await with_retry(
                lambda: ctx.client.delete(item.source_playlist_item_id),
                should_retry=is_retryable_remote_error,
                policy=self.retry_policy,
                sleep=self._sleep,
                label=f"playlistItems.delete[{item.id}]",
            )
        except Exception as e:
            if treat_not_found_as_success and is_not_found_error(e):
                logger.info(
                    "Remove treated as success (already removed)",
                    extra={"extra_data": {"item_id": item.id, "playlist_item_id": item.source_playlist_item_id}},
                )
                return _ItemOutcome(True)
            code, message = parse_remote_error(e)
            logger.warning(
                f"Delete failed for item {item.id}",
                extra={"extra_data": {"item_id": item.id, "error_code": code}},
                exc_info=True,
            )
            return _ItemOutcome(False, error_code=code, error_message=message)
        return _ItemOutcome(True)

    async def _close_item(self, ctx: _ExecutionContext, item: ActionItemORM, outcome: _ItemOutcome) -> None:
        async with self._write_lock:
            try:
                if outcome.ok:
                    await self.ledger.update_item(
                        item.id,
                        status=ItemStatus.SUCCESS,
                        target_playlist_item_id=outcome.remote_item_id,
                    )
                else:
                    await self.ledger.update_item(
                        item.id,
                        status=ItemStatus.FAILED,
                        error_code=outcome.error_code,
                        error_message=outcome.error_message,
                    )
            except ItemAlreadyClosedError:
                # Closed by the stuck-action sweep; the recorded outcome stands
                logger.warning(
                    f"Item {item.id} was closed by another writer; dropping its outcome",
                    extra={"extra_data": {"item_id": item.id, "ok": outcome.ok, "error_code": outcome.error_code}},
                )
                ctx.superseded = True
            else:
                await self.ledger.touch_action(item.action_id)
            await self.session.commit()

    async def _run_paced(
        self,
        ctx: _ExecutionContext,
        items: Sequence[ActionItemORM],
        step: Callable[[ActionItemORM], Awaitable[None]],
        delay_ms: int,
    ) -> None:
        """
        Run ``step`` over ``items`` in creation order with at most
        ``concurrency_window`` steps in flight, pausing ``delay_ms`` after each.
        Remaining items are skipped once the Action has been closed elsewhere.
        """
        if not items:
            return
        delay = max(0, delay_ms) / 1000.0
        window = max(1, self.pacing.concurrency_window)

        if window == 1:
            for index, item in enumerate(items):
                if ctx.superseded:
                    return
                await step(item)
                if delay and index < len(items) - 1:
                    await self._sleep(delay)
            return

        semaphore = asyncio.Semaphore(window)

        async def paced(item: ActionItemORM) -> None:
            async with semaphore:
                if ctx.superseded:
                    return
                await step(item)
                if delay:
                    await self._sleep(delay)

        await asyncio.gather(*(paced(item) for item in items))

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, action: ActionORM, using_fallback: bool) -> OperationResult:
        async with self._write_lock:
            counts = await self.ledger.get_counts(action.id)
            if counts.pending:
                logger.error(f"Action {action.id} reached finalization with {counts.pending} pending items")
                await self.ledger.fail_pending_items(action.id, ITEM_NOT_ATTEMPTED, "Item was never attempted")
                counts = await self.ledger.get_counts(action.id)

            status = compute_final_status(counts)
            try:
                action = await self.ledger.set_action_status(action.id, status, finished_at=datetime.now(timezone.utc))
            except InvalidStatusTransitionError:
                # Already finalized by the stuck-action sweep; report what it recorded
                action = await self.ledger.get_action(action.id)
                status = action.status
                logger.warning(f"Action {action.id} was finalized by another writer as {status.value}")

            if not using_fallback and counts.success:
                await self.usage.add_video_ops(counts.success)
            await self.session.commit()

            items = await self.ledger.list_items(action.id)

        logger.info(
            f"Action {action.id} finished with status {status.value}",
            extra={"extra_data": {"total": counts.total, "success": counts.success, "failed": counts.failed}},
        )
        return OperationResult(
            action=action,
            items=items,
            counts=counts,
            estimated_cost=estimate_cost(action.type, counts.total),
            using_fallback=using_fallback,
        )
