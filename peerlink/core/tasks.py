"""
Background Task Helpers

Joining of endpoint loops during stop and shutdown.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


async def join_task(task: Optional[asyncio.Task], timeout: float) -> None:
    """
    Wait for a background loop to exit after its endpoint was signalled.

    A loop that does not exit within the timeout is cancelled and awaited.
    Errors escaping the loop are logged, never raised.

    Args:
        task: Loop task (None is ignored)
        timeout: Grace period in seconds
    """
    if task is None:
        return

    if task is asyncio.current_task():
        # A loop stopping its own endpoint from inside a callback
        return

    if not task.done():
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning(f"Task {task.get_name()} did not exit within {timeout}s, cancelling")
            task.cancel()
            await asyncio.wait({task})

    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Task {task.get_name()} failed: {task.exception()}")


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a loop blocked in I/O and wait until it has unwound."""
    if task is None or task.done() or task is asyncio.current_task():
        return

    task.cancel()
    await asyncio.wait({task})
