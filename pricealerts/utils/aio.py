"""Helpers for calling blocking collaborators from the event loop."""
import asyncio
from typing import Any, Callable

from pricealerts.errors import StoreTimeoutError


async def run_io(fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
    """
    Run a blocking call in a worker thread with a timeout.

    Raises:
        StoreTimeoutError: the call did not finish in `timeout` seconds.
            The thread keeps running; the caller just stops waiting for it.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError:
        raise StoreTimeoutError(f"{getattr(fn, '__qualname__', fn)} timed out after {timeout}s")
