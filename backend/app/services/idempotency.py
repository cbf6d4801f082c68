"""
Idempotency Gate.

Maps a client-supplied key to the Action it created. A key is claimed when
its Action is created, not when the Action finishes, so a resubmission that
arrives while the first run is still executing short-circuits too.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.database import dialect_insert
from backend.app.core.logging import get_logger
from backend.app.models.idempotency_orm import IdempotencyKeyORM

logger = get_logger(__name__)


class IdempotencyConflictError(Exception):
    """The key is already claimed by a different user."""

    def __init__(self, key: str):
        self.key = key
        super().__init__("Idempotency key is already in use")


class IdempotencyGate:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def check_key(self, key: str) -> bool:
        result = await self.session.execute(
            select(IdempotencyKeyORM.key).where(IdempotencyKeyORM.key == key)
        )
        return result.scalar_one_or_none() is not None

    async def get_owner(self, key: str) -> Optional[str]:
        result = await self.session.execute(
            select(IdempotencyKeyORM.user_id).where(IdempotencyKeyORM.key == key)
        )
        return result.scalar_one_or_none()

    async def register_key(self, key: str, user_id: Optional[str] = None) -> bool:
        """
        Claim ``key``. Returns True when it was already registered (nothing
        written), False when this call registered it.
        """
        stmt = (
            dialect_insert(self.session, IdempotencyKeyORM)
            .values(key=key, user_id=user_id, created_at=datetime.now(timezone.utc))
            .on_conflict_do_nothing(index_elements=["key"])
        )
        result = await self.session.execute(stmt)
        already_registered = result.rowcount == 0
        if already_registered:
            logger.info(f"Idempotency key {key} was already registered")
        return already_registered
