"""Async utilities for bridging blocking engine calls to async MCP handlers."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a worker thread without blocking the event loop.

    Engine phases issue slow remote calls, so MCP tool handlers always go
    through this helper.  A phase running in one worker thread can then be
    canceled by a second tool call handled on the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        # In MCP tool handler:
        result = await run_sync(engine.run_phase, "import_all", params)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
