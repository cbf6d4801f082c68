"""
Action ledger ORM.

One ``ActionORM`` row per user-submitted bulk request and one
``ActionItemORM`` row per element of that request. Items become immutable
historical facts once they reach a terminal status; undo and retry always
create new rows.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Column, String, Integer, DateTime, Enum, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from backend.app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ActionType(str, PyEnum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    MOVE = "MOVE"
    UNDO = "UNDO"


class ActionStatus(str, PyEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ACTION_STATUSES


TERMINAL_ACTION_STATUSES = frozenset({ActionStatus.SUCCESS, ActionStatus.PARTIAL, ActionStatus.FAILED})

# Allowed forward transitions; status never regresses
ACTION_STATUS_TRANSITIONS = {
    ActionStatus.PENDING: frozenset({ActionStatus.RUNNING}) | TERMINAL_ACTION_STATUSES,
    ActionStatus.RUNNING: TERMINAL_ACTION_STATUSES,
    ActionStatus.SUCCESS: frozenset(),
    ActionStatus.PARTIAL: frozenset(),
    ActionStatus.FAILED: frozenset(),
}


class ItemStatus(str, PyEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemStatus.PENDING


class ActionORM(Base):
    __tablename__ = "actions"

    # May equal a client-supplied idempotency key
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    type = Column(Enum(ActionType, values_callable=_enum_values, native_enum=False, length=16), nullable=False)
    source_playlist_id = Column(String(255), nullable=True)
    target_playlist_id = Column(String(255), nullable=True)
    status = Column(
        Enum(ActionStatus, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=ActionStatus.PENDING,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    # Heartbeat; touched whenever the coordinator records progress
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    parent_action_id = Column(String(255), ForeignKey("actions.id"), nullable=True, index=True)
    # True when no remote client existed and items were marked success without calls
    using_fallback = Column(Boolean, nullable=False, default=False)

    items = relationship(
        "ActionItemORM",
        back_populates="action",
        order_by="ActionItemORM.seq",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_actions_user_created", "user_id", "created_at"),
        Index("ix_actions_status_updated", "status", "updated_at"),
    )

    def __repr__(self):
        return f"<Action {self.id} {self.type} status={self.status}>"


class ActionItemORM(Base):
    __tablename__ = "action_items"

    id = Column(String(36), primary_key=True)
    action_id = Column(String(255), ForeignKey("actions.id"), nullable=False)
    # Creation order inside the owning action; drives execution order
    seq = Column(Integer, nullable=False)
    type = Column(Enum(ActionType, values_callable=_enum_values, native_enum=False, length=16), nullable=False)
    video_id = Column(String(255), nullable=True)
    source_playlist_id = Column(String(255), nullable=True)
    target_playlist_id = Column(String(255), nullable=True)
    source_playlist_item_id = Column(String(255), nullable=True)
    target_playlist_item_id = Column(String(255), nullable=True)
    position = Column(Integer, nullable=True)
    status = Column(
        Enum(ItemStatus, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=ItemStatus.PENDING,
    )
    error_code = Column(String(128), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    action = relationship("ActionORM", back_populates="items")

    __table_args__ = (
        Index("ix_action_items_action_seq", "action_id", "seq", unique=True),
        Index("ix_action_items_action_status", "action_id", "status"),
    )

    def __repr__(self):
        return f"<ActionItem {self.id} action={self.action_id} #{self.seq} status={self.status}>"
