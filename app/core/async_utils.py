"""
Thread offload for blocking store calls.

run_sync() moves a synchronous SQLAlchemy call off the event loop. A
timeout only abandons the wait: the worker thread keeps running and its
transaction may still commit. Pass one for reads, never for writes whose
caller would retry.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SLOW_CALL_MS = 1000.0


def _call_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or getattr(func, "__name__", repr(func))


async def run_sync(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
) -> T:
    """
    Run *func(*args)* in the default executor and await its result.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Seconds to wait before giving up, or None to wait for
            completion. Only safe for idempotent calls.

    Raises:
        TimeoutError: If a timeout was given and exceeded.
        Exception: Any exception raised by func propagates unchanged.
    """
    name = _call_name(func)
    start = time.perf_counter()
    call = asyncio.to_thread(func, *args)
    try:
        if timeout is None:
            result = await call
        else:
            result = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = (time.perf_counter() - start) * 1000
        raise TimeoutError(
            f"{name} timed out after {elapsed:.0f}ms (limit {timeout}s)"
        )

    elapsed = (time.perf_counter() - start) * 1000
    if elapsed >= SLOW_CALL_MS:
        logger.warning("Slow store call %s took %.0fms", name, elapsed)
    else:
        logger.debug("run_sync %s completed in %.2fms", name, elapsed)
    return result
