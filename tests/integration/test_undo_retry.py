"""
Integration tests for undo and retry-failed.
"""
import pytest
from sqlalchemy import func, select

from backend.app.models.action_orm import ActionORM, ActionStatus, ActionType, ItemStatus
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkRemovePayload, MoveEntry
from backend.app.services.action_ledger import ActionAccessDeniedError, ActionLedger, ActionNotFoundError
from backend.app.services.undo_retry import ActionNotTerminalError, ActionReconstructor
from tests.fakes import permanent

USER = "user-1"


async def _action_count(db_session) -> int:
    result = await db_session.execute(select(func.count(ActionORM.id)))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_undo_add_removes_recorded_items(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(
        BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002", "vid003"]), user_id=USER,
    )
    recorded = [item.target_playlist_item_id for item in original.items]

    undo = await ActionReconstructor(coordinator).undo(original.action.id, USER)

    assert undo.action.type == ActionType.REMOVE
    assert undo.action.parent_action_id == original.action.id
    assert undo.action.source_playlist_id == "PLtarget"
    assert undo.counts.total == 3
    assert [item.source_playlist_item_id for item in undo.items] == recorded
    assert fake_client.calls_of("delete") == recorded
    # the original history is untouched
    assert (await ActionLedger(db_session).get_counts(original.action.id)).success == 3


@pytest.mark.asyncio
async def test_undo_of_undo_restores_videos(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    reconstructor = ActionReconstructor(coordinator)
    original = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)
    undo = await reconstructor.undo(original.action.id, USER)

    redo = await reconstructor.undo(undo.action.id, USER)

    assert redo.action.type == ActionType.ADD
    assert redo.action.target_playlist_id == "PLtarget"
    assert [item.video_id for item in redo.items] == ["vid001"]


@pytest.mark.asyncio
async def test_undo_move_moves_back(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(
        BulkMovePayload(
            source_playlist_id="PLsource",
            target_playlist_id="PLtarget",
            items=[MoveEntry(playlist_item_id="pli001", video_id="vid001")],
        ),
        user_id=USER,
    )
    fake_client.calls.clear()

    undo = await ActionReconstructor(coordinator).undo(original.action.id, USER)

    assert undo.action.type == ActionType.MOVE
    assert undo.action.source_playlist_id == "PLtarget"
    assert undo.action.target_playlist_id == "PLsource"
    assert fake_client.calls == [("insert", "vid001"), ("delete", "pli-PLtarget-vid001")]


@pytest.mark.asyncio
async def test_undo_remove_without_recorded_videos_is_none(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(
        BulkRemovePayload(playlist_item_ids=["pli001"], source_playlist_id="PLsource"), user_id=USER,
    )

    assert await ActionReconstructor(coordinator).undo(original.action.id, USER) is None
    assert await _action_count(db_session) == 1


@pytest.mark.asyncio
async def test_retry_with_nothing_failed_creates_nothing(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)

    assert await ActionReconstructor(coordinator).retry_failed(original.action.id, USER) is None
    assert await _action_count(db_session) == 1


@pytest.mark.asyncio
async def test_retry_failed_reruns_only_failed_items(db_session, make_coordinator, fake_client):
    fake_client.insert_failures["vid002"] = [permanent()]
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(
        BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002"]), user_id=USER,
    )
    fake_client.calls.clear()

    retry = await ActionReconstructor(coordinator).retry_failed(original.action.id, USER)

    assert retry.action.type == ActionType.ADD
    assert retry.action.parent_action_id == original.action.id
    assert [item.video_id for item in retry.items] == ["vid002"]
    assert retry.action.status == ActionStatus.SUCCESS
    assert fake_client.calls == [("insert", "vid002")]


@pytest.mark.asyncio
async def test_retry_move_does_not_reinsert_confirmed_copy(db_session, make_coordinator, fake_client):
    fake_client.delete_failures["pli001"] = [permanent()]
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(
        BulkMovePayload(
            source_playlist_id="PLsource",
            target_playlist_id="PLtarget",
            items=[MoveEntry(playlist_item_id="pli001", video_id="vid001")],
        ),
        user_id=USER,
    )
    assert original.items[0].status == ItemStatus.FAILED
    fake_client.calls.clear()

    retry = await ActionReconstructor(coordinator).retry_failed(original.action.id, USER)

    assert retry.action.status == ActionStatus.SUCCESS
    assert fake_client.calls == [("delete", "pli001")]
    assert retry.items[0].target_playlist_item_id == "pli-PLtarget-vid001"


@pytest.mark.asyncio
async def test_undo_requires_ownership(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    original = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)

    with pytest.raises(ActionAccessDeniedError):
        await ActionReconstructor(coordinator).undo(original.action.id, "intruder")
    with pytest.raises(ActionNotFoundError):
        await ActionReconstructor(coordinator).undo("does-not-exist", USER)


@pytest.mark.asyncio
async def test_undo_refused_while_running(db_session, make_coordinator, fake_client):
    ledger = ActionLedger(db_session)
    action = await ledger.create_action(user_id=USER, type=ActionType.ADD, target_playlist_id="PLtarget")
    await ledger.set_action_status(action.id, ActionStatus.RUNNING)
    await db_session.commit()

    coordinator = make_coordinator(fake_client)
    with pytest.raises(ActionNotTerminalError):
        await ActionReconstructor(coordinator).undo(action.id, USER)
    with pytest.raises(ActionNotTerminalError):
        await ActionReconstructor(coordinator).retry_failed(action.id, USER)
