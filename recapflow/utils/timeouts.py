"""
Hard timeouts for external calls.
A hung dependency resolves to OperationTimeoutError instead of hanging the caller.
"""
import asyncio
from typing import Awaitable, TypeVar

from recapflow.errors import OperationTimeoutError

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Race an awaitable against a deadline."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, seconds) from None
