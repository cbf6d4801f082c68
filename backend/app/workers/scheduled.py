"""Simple asyncio scheduler for periodic maintenance tasks (retention, stuck-action sweep)."""
import asyncio
from typing import Callable

from backend.app.core.logging import get_logger

logger = get_logger(__name__)


async def _periodic_task(interval_seconds: int, coro: Callable, *args, **kwargs):
    while True:
        try:
            await coro(*args, **kwargs)
        except Exception as e:
            logger.error(f"Scheduled task error: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def start_scheduler(interval_seconds: int, coro: Callable, *args, **kwargs):
    """Start periodic coro as background task and return the task."""
    task = asyncio.create_task(_periodic_task(interval_seconds, coro, *args, **kwargs))
    return task


async def stop_scheduler(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
