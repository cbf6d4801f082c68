"""
Action History API Router.

Browse a user's Actions and their per-item outcomes, and issue undo or
retry-failed against a finished Action.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Security, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api.bulk import error_detail, get_coordinator, to_operation_response
from backend.app.core.database import get_db
from backend.app.core.logging import get_logger
from backend.app.core.security import PLAYLIST_READ, PLAYLIST_WRITE, User, get_current_user
from backend.app.schemas.actions import (
    ActionItemResponse,
    ActionItemsPage,
    ActionListResponse,
    ActionResponse,
    ActionWithCounts,
    OperationResultResponse,
)
from backend.app.services.action_ledger import (
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
    ActionAccessDeniedError,
    ActionLedger,
    ActionNotFoundError,
)
from backend.app.services.bulk_coordinator import BulkMutationCoordinator
from backend.app.services.undo_retry import ActionNotTerminalError, ActionReconstructor

logger = get_logger(__name__)
router = APIRouter()


async def _owned_action(ledger: ActionLedger, action_id: str, user_id: str):
    try:
        return await ledger.get_owned_action(action_id, user_id)
    except ActionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error_detail("ACTION_NOT_FOUND", str(e)))
    except ActionAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error_detail("ACTION_FORBIDDEN", str(e)))


@router.get("", response_model=ActionListResponse)
async def list_actions(
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    cursor: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_READ]),
):
    """The user's Actions, newest first."""
    ledger = ActionLedger(db)
    actions, next_cursor = await ledger.list_actions(current_user.user_id, limit=limit, cursor=cursor)
    entries = [
        ActionWithCounts(action=ActionResponse.model_validate(action), counts=await ledger.get_counts(action.id))
        for action in actions
    ]
    return ActionListResponse(actions=entries, next_cursor=next_cursor)


@router.get("/{action_id}", response_model=ActionWithCounts)
async def get_action(
    action_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_READ]),
):
    ledger = ActionLedger(db)
    action = await _owned_action(ledger, action_id, current_user.user_id)
    return ActionWithCounts(action=ActionResponse.model_validate(action), counts=await ledger.get_counts(action.id))


@router.get("/{action_id}/items", response_model=ActionItemsPage)
async def list_action_items(
    action_id: str,
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    cursor: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_READ]),
):
    """Items of one Action in creation order."""
    ledger = ActionLedger(db)
    await _owned_action(ledger, action_id, current_user.user_id)
    items, next_cursor = await ledger.list_items_page(action_id, limit=limit, cursor=cursor)
    return ActionItemsPage(
        items=[ActionItemResponse.model_validate(item) for item in items],
        next_cursor=next_cursor,
    )


async def _reconstruct(
    action_id: str,
    user_id: str,
    coordinator: BulkMutationCoordinator,
    undo: bool,
) -> OperationResultResponse:
    reconstructor = ActionReconstructor(coordinator)
    try:
        if undo:
            result = await reconstructor.undo(action_id, user_id)
        else:
            result = await reconstructor.retry_failed(action_id, user_id)
    except ActionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error_detail("ACTION_NOT_FOUND", str(e)))
    except ActionAccessDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error_detail("ACTION_FORBIDDEN", str(e)))
    except ActionNotTerminalError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error_detail("ACTION_NOT_FINISHED", str(e)))

    if result is None:
        if undo:
            detail = error_detail("NOTHING_TO_UNDO", f"Action {action_id} has no inverse to apply")
        else:
            detail = error_detail("NO_FAILED_ITEMS", f"Action {action_id} has no failed items")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    return to_operation_response(result)


@router.post("/{action_id}/undo", response_model=OperationResultResponse, status_code=201)
async def undo_action(
    action_id: str,
    coordinator: BulkMutationCoordinator = Depends(get_coordinator),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_WRITE]),
):
    """Apply the recorded inverse of a finished Action as a new Action."""
    return await _reconstruct(action_id, current_user.user_id, coordinator, undo=True)


@router.post("/{action_id}/retry-failed", response_model=OperationResultResponse, status_code=201)
async def retry_failed_items(
    action_id: str,
    coordinator: BulkMutationCoordinator = Depends(get_coordinator),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_WRITE]),
):
    """Re-run only the failed Items of a finished Action as a new Action."""
    return await _reconstruct(action_id, current_user.user_id, coordinator, undo=False)
