from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, Optional

from hl_copytrader.core.errors import RemoteTimeout


async def call_remote(fn: Callable[..., Any], *args: Any, timeout_s: Optional[float] = None, label: str = "", **kwargs: Any) -> Any:
    """
    Run a blocking SDK call in the default executor, bounded by a timeout.

    The worker thread is not interrupted on expiry; its result is discarded.
    """
    loop = asyncio.get_running_loop()
    fut = loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
    if timeout_s is None or timeout_s <= 0:
        return await fut
    try:
        return await asyncio.wait_for(fut, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise RemoteTimeout(f"{label or getattr(fn, '__name__', 'call')} timed out after {timeout_s}s") from e
