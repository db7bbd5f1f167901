"""Explicit timing/logging wrapper for service operations."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def timed_operation(name: str, operation: Callable[[], Awaitable[T]]) -> T:
    """Run *operation*, logging start, completion and duration.

    The result or exception passes through unchanged.
    """
    logger.debug("%s started", name)
    start = time.perf_counter()
    try:
        result = await operation()
    except Exception as e:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.warning("%s failed after %.0f ms: %s", name, elapsed_ms, e)
        raise
    elapsed_ms = (time.perf_counter() - start) * 1000
    logger.debug("%s completed in %.0f ms", name, elapsed_ms)
    return result
