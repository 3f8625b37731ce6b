"""Observer callback invocation shared by the orchestrator and queue flows."""

import inspect
import logging
from collections.abc import Callable
from typing import Any


logger = logging.getLogger(__name__)


async def notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Invoke `callback`, awaiting it when it returns an awaitable.

    Observer failures are logged; they never change the outcome being reported.
    """
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        name = getattr(callback, "__qualname__", repr(callback))
        logger.exception(f"Callback {name} raised")
