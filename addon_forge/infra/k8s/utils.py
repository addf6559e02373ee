"""Utility functions for the cluster client layer.

Provides helpers for running async code in sync contexts and for
bounding cluster calls with the caller's timeout.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Coroutine
from typing import Any

from addon_forge.core.errors import (
    APIError,
    TransientAPIError,
    classify_api_error,
)


def run_sync[T](coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a blocking sync context.

    This is useful for calling async ClusterClient methods from
    synchronous CLI commands.

    Args:
        coro: The coroutine to execute

    Returns:
        The result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # No running loop, create a new one
        return asyncio.run(coro)
    else:
        if loop.is_running():
            # Create a new loop in a thread to avoid blocking
            import concurrent.futures

            with concurrent.futures.ThreadPoolExecutor() as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)


async def bounded[T](awaitable: Awaitable[T], timeout: float, action: str) -> T:
    """Await a cluster call under a timeout.

    Args:
        awaitable: The cluster call
        timeout: Seconds allowed
        action: Short description used in error messages

    Returns:
        The call's result

    Raises:
        TransientAPIError: On timeout or transport failure
        PermanentAPIError: On any other client failure
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        raise TransientAPIError(f"{action} timed out after {timeout}s") from e
    except APIError:
        raise
    except Exception as e:
        raise classify_api_error(e, action) from e


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_timeout(timeout: str) -> float:
    """Parse a helm duration like '120s', '5m' or '1h30m' to seconds.

    A bare number is taken as seconds.

    Raises:
        ValueError: If the string is not a duration
    """
    text = timeout.strip()
    if re.fullmatch(r"\d+(?:\.\d+)?", text):
        return float(text)
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(number + unit for number, unit in parts) != text:
        raise ValueError(f"Invalid duration '{timeout}'")
    return sum(float(number) * _UNIT_SECONDS[unit] for number, unit in parts)
