"""
Callback Dispatch

Helpers for handing text to collaborator callbacks from background loops.
A misbehaving callback must never take down the loop that calls it.
"""

import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


TextCallback = Callable[[str], Union[None, Awaitable[None]]]


async def invoke_callback(callback: Optional[TextCallback], text: str) -> None:
    """
    Invoke a callback with text, discarding any exception it raises.

    Plain functions and coroutine functions are both accepted; an awaitable
    result is awaited before returning so per-connection ordering holds.

    Args:
        callback: Collaborator callback (None is ignored)
        text: Text to deliver
    """
    if callback is None:
        return

    try:
        result = callback(text)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug(f"Callback {callback!r} raised, ignored: {e}", exc_info=True)


async def notify(
    on_info: Optional[TextCallback],
    fallback: Optional[TextCallback],
    text: str
) -> None:
    """
    Deliver a diagnostic to the info channel, or to the fallback callback
    when the caller did not supply one.
    """
    await invoke_callback(on_info if on_info is not None else fallback, text)
