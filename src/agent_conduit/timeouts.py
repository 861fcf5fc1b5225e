"""Timeout wrapper for backend operations.

A pure decorator: when the timeout is disabled (``None``, zero, negative,
NaN or infinite) the operation is awaited untouched, with no timer created.
Otherwise the operation races a timer and the loser is cancelled, so its
eventual settlement never reaches the caller.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable
from typing import TypeVar

from agent_conduit.errors import OperationTimeoutError

T = TypeVar("T")


def timeout_enabled(timeout_ms: float | None) -> bool:
    """Return True if ``timeout_ms`` should arm a timer."""
    if timeout_ms is None:
        return False
    return math.isfinite(timeout_ms) and timeout_ms > 0


async def with_timeout(operation: Awaitable[T], timeout_ms: float | None, message: str) -> T:
    """Await ``operation``, failing with ``OperationTimeoutError(message)`` after ``timeout_ms``."""
    if not timeout_enabled(timeout_ms):
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(message) from None
