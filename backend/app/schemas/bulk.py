"""
Bulk mutation request schemas.

One strict schema per operation type. Unknown fields and alternate shapes
are rejected at the boundary; the coordinator only ever sees these models.
"""

from typing import Annotated, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic.alias_generators import to_camel

ID_PATTERN = r"^[A-Za-z0-9_-]{3,255}$"

YoutubeId = Annotated[str, StringConstraints(min_length=3, max_length=255, pattern=ID_PATTERN)]
IdempotencyKey = Annotated[str, StringConstraints(min_length=8, max_length=255)]


class StrictPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class BulkAddPayload(StrictPayload):
    """Add videos to one target playlist."""
    target_playlist_id: YoutubeId
    video_ids: List[YoutubeId] = Field(..., min_length=1, description="Provide at least one video ID")
    idempotency_key: Optional[IdempotencyKey] = None


class BulkRemovePayload(StrictPayload):
    """Remove playlist items (by playlist item id) from their playlist."""
    playlist_item_ids: List[YoutubeId] = Field(..., min_length=1, description="Provide at least one playlist item ID")
    source_playlist_id: Optional[YoutubeId] = None
    idempotency_key: Optional[IdempotencyKey] = None
    # playlist item id -> video id, recorded so the removal can be undone
    video_ids: Optional[Dict[YoutubeId, YoutubeId]] = None

    @model_validator(mode="after")
    def _video_ids_refer_to_removed_items(self):
        if self.video_ids:
            unknown = set(self.video_ids) - set(self.playlist_item_ids)
            if unknown:
                raise ValueError(f"videoIds references unknown playlist items: {sorted(unknown)}")
        return self


class MoveEntry(StrictPayload):
    playlist_item_id: YoutubeId
    video_id: YoutubeId
    # Set when the target copy already exists; the insert step is skipped
    target_playlist_item_id: Optional[YoutubeId] = None


class BulkMovePayload(StrictPayload):
    """Move playlist items from a source playlist into a different target playlist."""
    source_playlist_id: YoutubeId
    target_playlist_id: YoutubeId
    items: List[MoveEntry] = Field(..., min_length=1, description="Provide at least one playlist item to move")
    idempotency_key: Optional[IdempotencyKey] = None

    @model_validator(mode="after")
    def _source_and_target_differ(self):
        if self.source_playlist_id == self.target_playlist_id:
            raise ValueError("Source and target playlists must differ")
        return self


BulkPayload = Union[BulkAddPayload, BulkRemovePayload, BulkMovePayload]
