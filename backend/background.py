# background.py — Fire-and-forget side effects with their own error boundary
import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger("sprintboard.background")

# Strong references so pending tasks are not garbage collected mid-flight
_pending: Set[asyncio.Task] = set()


async def _guarded(coro: Awaitable, label: str) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        logger.info(f"Background task cancelled: {label}")
        raise
    except Exception as e:
        logger.warning(f"Background task failed: {label}: {e}", exc_info=True)


def spawn(coro: Awaitable, label: str) -> asyncio.Task:
    """Schedule a coroutine without awaiting it; failures are logged, never raised"""
    task = asyncio.create_task(_guarded(coro, label), name=label)
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain() -> None:
    """Wait for every pending background task (shutdown and tests)"""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
