"""
Idempotency key registry.

Append-only: a key is claimed once, when its Action is created, and is only
ever removed by the retention job.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, Index

from backend.app.core.database import Base


class IdempotencyKeyORM(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String(255), primary_key=True)
    user_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_idempotency_keys_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<IdempotencyKey {self.key} user={self.user_id}>"
