"""
Data Retention Enforcement Service

Retention policies:
  - Quota usage day buckets:  usage_retention_days (by calendar day in the quota timezone)
  - Idempotency keys:         idempotency_retention_days (by claim time)
  - Actions and items:        Indefinite (history backing undo/retry, NOT auto-deleted)
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import get_settings
from backend.app.core.logging import get_logger
from backend.app.models.idempotency_orm import IdempotencyKeyORM
from backend.app.services.usage_recorder import UsageRecorder, quota_day_key

logger = get_logger(__name__)

# Tables never auto-deleted
PROTECTED_TABLES = ["actions", "action_items"]


class DataRetentionService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _get_session(self, session: Optional[AsyncSession] = None):
        if session:
            yield session
        else:
            async with self.session_factory() as new_session:
                try:
                    yield new_session
                    await new_session.commit()
                except Exception:
                    await new_session.rollback()
                    raise
                finally:
                    await new_session.close()

    async def run_retention_cleanup(
        self,
        session: Optional[AsyncSession] = None,
        now: Optional[datetime] = None,
    ) -> Dict:
        """Delete usage buckets and idempotency keys older than their retention window."""
        settings = get_settings()
        now = now or datetime.now(timezone.utc)
        results: Dict = {}

        async with self._get_session(session) as s:
            usage_cutoff = quota_day_key(now - timedelta(days=settings.usage_retention_days))
            deleted = await UsageRecorder(s).prune_before(usage_cutoff)
            results["quota_usage"] = {"deleted": deleted, "cutoff": usage_cutoff}
            logger.info(f"Retention cleanup: deleted {deleted} rows from 'quota_usage' (cutoff: {usage_cutoff})")

            key_cutoff = now - timedelta(days=settings.idempotency_retention_days)
            result = await s.execute(
                delete(IdempotencyKeyORM).where(IdempotencyKeyORM.created_at < key_cutoff)
            )
            deleted = result.rowcount or 0
            results["idempotency_keys"] = {"deleted": deleted, "cutoff": key_cutoff.isoformat()}
            logger.info(
                f"Retention cleanup: deleted {deleted} rows from 'idempotency_keys' "
                f"(cutoff: {key_cutoff.date()})"
            )

        for table in PROTECTED_TABLES:
            results[table] = {"skipped": True, "reason": "action history is kept indefinitely"}

        return results
