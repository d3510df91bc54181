"""Deadline helper that reports expiry as a classified, retryable failure."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from vibler.errors.exceptions import UpstreamTimeoutError

T = TypeVar("T")


async def with_timeout(
    operation: Callable[[], Awaitable[T]],
    seconds: float,
    name: str = "operation",
) -> T:
    """
    Await an operation, converting expiry into UpstreamTimeoutError.

    Args:
        operation: Zero-argument callable returning an awaitable
        seconds: Time budget for one attempt
        name: Label used in the error message and context

    Raises:
        UpstreamTimeoutError: If the operation does not finish in time
    """
    try:
        return await asyncio.wait_for(operation(), timeout=seconds)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(
            f"{name} timed out after {seconds:g}s",
            cause=e,
            context={"timeout_seconds": seconds, "operation": name},
        ) from e
