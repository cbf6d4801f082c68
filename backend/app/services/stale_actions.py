"""
Stuck-action supervisor.

An Action has no crash-recovery path: if its process dies mid-execution it
stays ``running`` forever. This sweep closes such Actions out instead of
resuming them. An Action counts as stuck once its ``updated_at`` heartbeat,
touched by the coordinator after every Item, is older than the timeout.
Its pending Items fail with ``ACTION_TIMEOUT`` and the Action is finalized
with the normal success/partial/failed rule, after which retry-failed can
re-drive the timed-out Items.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import get_settings
from backend.app.core.logging import get_logger
from backend.app.services.action_ledger import ActionLedger, InvalidStatusTransitionError
from backend.app.services.bulk_coordinator import compute_final_status

logger = get_logger(__name__)

ACTION_TIMEOUT = "ACTION_TIMEOUT"


class StaleActionSupervisor:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], timeout_minutes: Optional[int] = None):
        self.session_factory = session_factory
        self.timeout = timedelta(minutes=timeout_minutes or get_settings().stale_action_timeout_minutes)

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

    async def sweep(self, session: Optional[AsyncSession] = None, now: Optional[datetime] = None) -> List[str]:
        """Time out every running Action with no progress within the timeout; returns their ids."""
        now = now or datetime.now(timezone.utc)
        closed: List[str] = []

        async with self._get_session(session) as s:
            ledger = ActionLedger(s)
            for action in await ledger.list_stale_running(now - self.timeout):
                failed = await ledger.fail_pending_items(
                    action.id, ACTION_TIMEOUT, "Action did not finish before the timeout"
                )
                counts = await ledger.get_counts(action.id)
                status = compute_final_status(counts)
                try:
                    await ledger.set_action_status(action.id, status, finished_at=now)
                except InvalidStatusTransitionError:
                    # Finalized by its coordinator between the query and this write
                    logger.info(f"Action {action.id} finished before it could be timed out")
                    continue
                closed.append(action.id)
                logger.warning(
                    f"Timed out stuck action {action.id}",
                    extra={"extra_data": {"timed_out_items": failed, "status": status.value}},
                )
            if session is not None:
                await s.commit()

        return closed
