"""
Integration tests for the bulk mutation coordinator against an in-memory ledger.
"""
import pytest
from sqlalchemy import func, select

from backend.app.models.action_orm import ActionORM, ActionStatus, ActionType, ItemStatus
from backend.app.models.usage_orm import GLOBAL_SCOPE, user_scope
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkRemovePayload, MoveEntry
from backend.app.services.bulk_coordinator import BulkValidationError
from backend.app.services.usage_recorder import UsageRecorder
from tests.fakes import permanent, transient

USER = "user-1"


async def _action_count(db_session) -> int:
    result = await db_session.execute(select(func.count(ActionORM.id)))
    return result.scalar_one()


@pytest.mark.asyncio
async def test_add_all_succeed(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    payload = BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002", "vid003"])

    result = await coordinator.execute(payload, user_id=USER)

    assert result.action.status == ActionStatus.SUCCESS
    assert result.action.type == ActionType.ADD
    assert result.action.finished_at is not None
    assert (result.counts.total, result.counts.success, result.counts.failed) == (3, 3, 0)
    assert result.estimated_cost == 150
    assert result.using_fallback is False
    assert [item.target_playlist_item_id for item in result.items] == [
        "pli-PLtarget-vid001", "pli-PLtarget-vid002", "pli-PLtarget-vid003",
    ]
    assert fake_client.calls_of("insert") == ["vid001", "vid002", "vid003"]
    assert fake_client.closed is True


@pytest.mark.asyncio
async def test_add_records_usage_and_video_ops(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002"]), user_id=USER)

    usage = UsageRecorder(db_session)
    assert await usage.read_today(GLOBAL_SCOPE) == 100
    assert await usage.read_today(user_scope(USER)) == 100
    assert await usage.get_video_ops() == 2


@pytest.mark.asyncio
async def test_add_deduplicates_within_batch(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    payload = BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid001", "vid002"])

    result = await coordinator.execute(payload, user_id=USER)

    assert result.counts.total == 2
    assert fake_client.calls_of("insert") == ["vid001", "vid002"]


@pytest.mark.asyncio
async def test_add_permanent_failure_is_not_retried(db_session, make_coordinator, fake_client):
    fake_client.insert_failures["vid002"] = [permanent()]
    coordinator = make_coordinator(fake_client)

    result = await coordinator.execute(
        BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002", "vid003"]), user_id=USER,
    )

    assert result.action.status == ActionStatus.PARTIAL
    failed = [item for item in result.items if item.status == ItemStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].video_id == "vid002"
    assert failed[0].error_code == "forbidden"
    assert failed[0].error_message == "Permission denied"
    assert fake_client.calls_of("insert").count("vid002") == 1
    # every item is attempted regardless of earlier failures
    assert fake_client.calls_of("insert") == ["vid001", "vid002", "vid003"]


@pytest.mark.asyncio
async def test_add_transient_failures_are_retried(db_session, make_coordinator, fake_client):
    fake_client.insert_failures["vid001"] = [transient(), transient("rateLimitExceeded", "Rate limit exceeded", 429)]
    coordinator = make_coordinator(fake_client)

    result = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)

    assert result.action.status == ActionStatus.SUCCESS
    assert fake_client.calls_of("insert") == ["vid001"] * 3
    assert coordinator.sleeps == pytest.approx([0.001, 0.002])


@pytest.mark.asyncio
async def test_add_retry_exhaustion_fails_item(db_session, make_coordinator, fake_client):
    fake_client.insert_failures["vid001"] = [transient() for _ in range(10)]
    coordinator = make_coordinator(fake_client)

    result = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)

    assert result.action.status == ActionStatus.FAILED
    assert result.items[0].error_code == "backendError"
    # max_retries=3 in the test coordinator
    assert len(fake_client.calls_of("insert")) == 4


@pytest.mark.asyncio
async def test_add_without_remote_id_gets_placeholder(db_session, make_coordinator, fake_client):
    fake_client.return_no_id = True
    coordinator = make_coordinator(fake_client)

    result = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001"]), user_id=USER)

    target_id = result.items[0].target_playlist_item_id
    assert target_id.startswith("mock-")
    assert len(target_id) == len("mock-") + 8


@pytest.mark.asyncio
async def test_fallback_mode_marks_items_success_without_calls(db_session, make_coordinator):
    coordinator = make_coordinator(None)

    result = await coordinator.execute(
        BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vid001", "vid002"]), user_id=USER,
    )

    assert result.using_fallback is True
    assert result.action.using_fallback is True
    assert result.action.status == ActionStatus.SUCCESS
    assert [item.target_playlist_item_id for item in result.items] == ["mock-vid001", "mock-vid002"]

    usage = UsageRecorder(db_session)
    assert await usage.read_today(GLOBAL_SCOPE) == 0
    assert await usage.get_video_ops() == 0


@pytest.mark.asyncio
async def test_remove_not_found_counts_as_success(db_session, make_coordinator, fake_client):
    fake_client.delete_failures["pli002"] = [permanent("playlistItemNotFound", "Playlist item not found", 404)]
    fake_client.delete_failures["pli003"] = [permanent()]
    coordinator = make_coordinator(fake_client)

    result = await coordinator.execute(
        BulkRemovePayload(playlist_item_ids=["pli001", "pli002", "pli003"], source_playlist_id="PLsource"),
        user_id=USER,
    )

    statuses = {item.source_playlist_item_id: item.status for item in result.items}
    assert statuses == {"pli001": ItemStatus.SUCCESS, "pli002": ItemStatus.SUCCESS, "pli003": ItemStatus.FAILED}
    assert result.items[2].error_code == "forbidden"
    assert result.action.status == ActionStatus.PARTIAL
    assert fake_client.calls_of("delete") == ["pli001", "pli002", "pli003"]


@pytest.mark.asyncio
async def test_move_partial_insert_failure(db_session, make_coordinator, fake_client):
    fake_client.insert_failures["vid002"] = [permanent()]
    coordinator = make_coordinator(fake_client)
    payload = BulkMovePayload(
        source_playlist_id="PLsource",
        target_playlist_id="PLtarget",
        items=[
            MoveEntry(playlist_item_id="pli001", video_id="vid001"),
            MoveEntry(playlist_item_id="pli002", video_id="vid002"),
        ],
    )

    result = await coordinator.execute(payload, user_id=USER)

    first, second = result.items
    assert first.status == ItemStatus.SUCCESS
    assert first.target_playlist_item_id == "pli-PLtarget-vid001"
    assert second.status == ItemStatus.FAILED
    assert second.error_code == "forbidden"
    assert second.target_playlist_item_id is None
    assert result.action.status == ActionStatus.PARTIAL
    assert result.estimated_cost == 200
    # the source copy is deleted only where the target copy was confirmed
    assert fake_client.calls_of("delete") == ["pli001"]
    assert fake_client.calls == [("insert", "vid001"), ("insert", "vid002"), ("delete", "pli001")]


@pytest.mark.asyncio
async def test_move_delete_failure_keeps_target_copy_recorded(db_session, make_coordinator, fake_client):
    fake_client.delete_failures["pli001"] = [permanent()]
    coordinator = make_coordinator(fake_client)
    payload = BulkMovePayload(
        source_playlist_id="PLsource",
        target_playlist_id="PLtarget",
        items=[MoveEntry(playlist_item_id="pli001", video_id="vid001")],
    )

    result = await coordinator.execute(payload, user_id=USER)

    item = result.items[0]
    assert item.status == ItemStatus.FAILED
    assert item.error_code == "forbidden"
    assert item.target_playlist_item_id == "pli-PLtarget-vid001"


@pytest.mark.asyncio
async def test_move_with_confirmed_target_skips_insert(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    payload = BulkMovePayload(
        source_playlist_id="PLsource",
        target_playlist_id="PLtarget",
        items=[MoveEntry(playlist_item_id="pli001", video_id="vid001", target_playlist_item_id="pli-existing")],
    )

    result = await coordinator.execute(payload, user_id=USER)

    assert result.action.status == ActionStatus.SUCCESS
    assert fake_client.calls == [("delete", "pli001")]
    assert result.items[0].target_playlist_item_id == "pli-existing"


@pytest.mark.asyncio
async def test_windowed_execution_keeps_item_order(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client, window=3)
    video_ids = [f"vid00{i}" for i in range(1, 6)]

    result = await coordinator.execute(BulkAddPayload(target_playlist_id="PLtarget", video_ids=video_ids), user_id=USER)

    assert result.counts.success == 5
    assert [item.video_id for item in result.items] == video_ids
    assert [item.seq for item in result.items] == list(range(5))


@pytest.mark.asyncio
async def test_invalid_payload_creates_nothing(db_session, make_coordinator, fake_client):
    coordinator = make_coordinator(fake_client)
    payload = BulkMovePayload.model_construct(
        source_playlist_id="PLsame",
        target_playlist_id="PLsame",
        items=[MoveEntry(playlist_item_id="pli001", video_id="vid001")],
        idempotency_key=None,
    )

    with pytest.raises(BulkValidationError):
        await coordinator.execute(payload, user_id=USER)

    assert await _action_count(db_session) == 0
    assert fake_client.calls == []
