from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    error_type: type[Exception],
    operation_name: str = "operation",
) -> T:
    """Awaits with a deadline, converting a timeout into ``error_type``."""

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        raise error_type(f"{operation_name} timed out after {timeout}s") from exc


def backoff_delay(retry: int, base: float, ceiling: float, requested: float | None = None) -> float:
    if requested is not None and requested >= 0:
        return min(requested, ceiling)
    return min(base * (2**retry), ceiling)
