"""
Unit tests for bulk request schemas, item derivation and status rules.
"""
import pytest
from pydantic import ValidationError

from backend.app.models.action_orm import ActionStatus, ActionType
from backend.app.schemas.actions import ActionCounts
from backend.app.schemas.bulk import BulkAddPayload, BulkMovePayload, BulkRemovePayload, MoveEntry
from backend.app.services.bulk_coordinator import (
    BulkValidationError,
    build_items,
    compute_final_status,
    estimate_cost,
    validate_payload,
)


def test_add_payload_accepts_camel_case():
    payload = BulkAddPayload.model_validate({
        "targetPlaylistId": "PLtarget",
        "videoIds": ["vid001", "vid002"],
        "idempotencyKey": "key-12345",
    })
    assert payload.target_playlist_id == "PLtarget"
    assert payload.video_ids == ["vid001", "vid002"]


def test_add_payload_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        BulkAddPayload.model_validate({"targetPlaylistId": "PLtarget", "videoIds": ["vid001"], "playlistId": "PLx"})


def test_add_payload_rejects_empty_batch():
    with pytest.raises(ValidationError):
        BulkAddPayload.model_validate({"targetPlaylistId": "PLtarget", "videoIds": []})


@pytest.mark.parametrize("bad_id", ["ab", "has space", "semi;colon", "x" * 256])
def test_identifier_format_is_enforced(bad_id):
    with pytest.raises(ValidationError):
        BulkAddPayload.model_validate({"targetPlaylistId": "PLtarget", "videoIds": [bad_id]})


def test_short_idempotency_key_is_rejected():
    with pytest.raises(ValidationError):
        BulkAddPayload.model_validate({"targetPlaylistId": "PLtarget", "videoIds": ["vid001"], "idempotencyKey": "short"})


def test_move_payload_requires_distinct_playlists():
    with pytest.raises(ValidationError):
        BulkMovePayload.model_validate({
            "sourcePlaylistId": "PLsame",
            "targetPlaylistId": "PLsame",
            "items": [{"playlistItemId": "pli001", "videoId": "vid001"}],
        })


def test_remove_video_map_must_reference_removed_items():
    with pytest.raises(ValidationError):
        BulkRemovePayload.model_validate({
            "playlistItemIds": ["pli001"],
            "videoIds": {"pli999": "vid001"},
        })


def test_validate_payload_catches_same_playlist_move_built_without_validation():
    payload = BulkMovePayload.model_construct(
        source_playlist_id="PLsame",
        target_playlist_id="PLsame",
        items=[MoveEntry(playlist_item_id="pli001", video_id="vid001")],
        idempotency_key=None,
    )
    with pytest.raises(BulkValidationError):
        validate_payload(payload)


def test_add_items_are_deduplicated_in_request_order():
    payload = BulkAddPayload(target_playlist_id="PLtarget", video_ids=["vidB", "vidA", "vidB", "vidC", "vidA"])
    items = build_items(payload)
    assert [item.video_id for item in items] == ["vidB", "vidA", "vidC"]
    assert all(item.type == ActionType.ADD and item.target_playlist_id == "PLtarget" for item in items)


def test_remove_items_carry_video_ids_for_undo():
    payload = BulkRemovePayload(
        playlist_item_ids=["pli001", "pli002", "pli001"],
        source_playlist_id="PLsource",
        video_ids={"pli001": "vid001"},
    )
    items = build_items(payload)
    assert [item.source_playlist_item_id for item in items] == ["pli001", "pli002"]
    assert items[0].video_id == "vid001"
    assert items[1].video_id is None


def test_move_items_keep_first_entry_per_playlist_item():
    payload = BulkMovePayload(
        source_playlist_id="PLsource",
        target_playlist_id="PLtarget",
        items=[
            MoveEntry(playlist_item_id="pli001", video_id="vid001"),
            MoveEntry(playlist_item_id="pli002", video_id="vid002"),
            MoveEntry(playlist_item_id="pli001", video_id="vid999"),
        ],
    )
    items = build_items(payload)
    assert [(item.source_playlist_item_id, item.video_id) for item in items] == [("pli001", "vid001"), ("pli002", "vid002")]
    assert all(item.source_playlist_id == "PLsource" and item.target_playlist_id == "PLtarget" for item in items)


def test_cost_estimate_doubles_for_move():
    assert estimate_cost(ActionType.ADD, 3, unit_cost=50) == 150
    assert estimate_cost(ActionType.REMOVE, 3, unit_cost=50) == 150
    assert estimate_cost(ActionType.MOVE, 3, unit_cost=50) == 300


@pytest.mark.parametrize("total,success,failed,expected", [
    (3, 3, 0, ActionStatus.SUCCESS),
    (3, 0, 3, ActionStatus.FAILED),
    (3, 2, 1, ActionStatus.PARTIAL),
    (0, 0, 0, ActionStatus.SUCCESS),
])
def test_final_status_from_counts(total, success, failed, expected):
    assert compute_final_status(ActionCounts(total=total, success=success, failed=failed)) == expected
