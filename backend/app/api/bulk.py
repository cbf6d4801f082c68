"""
Bulk Mutation API Router.

Submits ADD / REMOVE / MOVE batches. Each call creates one Action (or, on a
repeated idempotency key, returns the Action the key already created).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, Security, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import get_db
from backend.app.core.logging import get_logger
from backend.app.core.security import PLAYLIST_WRITE, User, get_current_user
from backend.app.schemas.actions import (
    ActionCounts,
    ActionItemResponse,
    ActionResponse,
    OperationResultResponse,
)
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkPayload, BulkRemovePayload
from backend.app.services.bulk_coordinator import BulkMutationCoordinator, BulkValidationError, OperationResult
from backend.app.services.idempotency import IdempotencyConflictError
from backend.app.services.remote_client import RemoteClientProvider

logger = get_logger(__name__)
router = APIRouter()


def error_detail(code: str, message: str) -> dict:
    return {"code": code, "message": message}


async def get_client_provider(db: AsyncSession = Depends(get_db)) -> RemoteClientProvider:
    return RemoteClientProvider(db)


async def get_coordinator(
    db: AsyncSession = Depends(get_db),
    provider: RemoteClientProvider = Depends(get_client_provider),
) -> BulkMutationCoordinator:
    return BulkMutationCoordinator(db, client_provider=provider)


def to_operation_response(result: OperationResult) -> OperationResultResponse:
    return OperationResultResponse(
        action=ActionResponse.model_validate(result.action),
        items=[ActionItemResponse.model_validate(item) for item in result.items],
        counts=ActionCounts(total=result.counts.total, success=result.counts.success, failed=result.counts.failed),
        estimated_cost=result.estimated_cost,
        using_fallback=result.using_fallback,
        idempotent=result.idempotent,
    )


async def _submit(
    payload: BulkPayload,
    idempotency_key: Optional[str],
    response: Response,
    coordinator: BulkMutationCoordinator,
    current_user: User,
) -> OperationResultResponse:
    if idempotency_key and payload.idempotency_key and idempotency_key != payload.idempotency_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail("IDEMPOTENCY_KEY_MISMATCH", "Idempotency-Key header and idempotencyKey differ"),
        )

    try:
        result = await coordinator.submit(payload, user_id=current_user.user_id, idempotency_key=idempotency_key)
    except BulkValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error_detail("VALIDATION_ERROR", str(e)))
    except IdempotencyConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error_detail("IDEMPOTENCY_CONFLICT", str(e)))

    response.status_code = status.HTTP_200_OK if result.idempotent else status.HTTP_201_CREATED
    return to_operation_response(result)


@router.post("/add", response_model=OperationResultResponse, status_code=201)
async def bulk_add(
    payload: BulkAddPayload,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", min_length=8, max_length=255),
    coordinator: BulkMutationCoordinator = Depends(get_coordinator),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_WRITE]),
):
    """Add videos to a playlist."""
    return await _submit(payload, idempotency_key, response, coordinator, current_user)


@router.post("/remove", response_model=OperationResultResponse, status_code=201)
async def bulk_remove(
    payload: BulkRemovePayload,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", min_length=8, max_length=255),
    coordinator: BulkMutationCoordinator = Depends(get_coordinator),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_WRITE]),
):
    """Remove playlist items. Items that are already gone count as removed."""
    return await _submit(payload, idempotency_key, response, coordinator, current_user)


@router.post("/move", response_model=OperationResultResponse, status_code=201)
async def bulk_move(
    payload: BulkMovePayload,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", min_length=8, max_length=255),
    coordinator: BulkMutationCoordinator = Depends(get_coordinator),
    current_user: User = Security(get_current_user, scopes=[PLAYLIST_WRITE]),
):
    """
    Move playlist items to another playlist.

    The source copy is deleted only after the target copy was confirmed.
    """
    return await _submit(payload, idempotency_key, response, coordinator, current_user)
