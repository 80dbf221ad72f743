"""Bounded exponential-backoff retry for remote calls."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Run an async operation, retrying failures with exponential backoff.

    The delay doubles after every failed attempt. Errors not listed in
    ``retry_on`` propagate immediately; once the retry budget is spent the
    last error propagates.

    Args:
        operation: Zero-argument callable returning an awaitable.
        retries: Number of retries after the first attempt.
        delay: Seconds to wait before the first retry.
        retry_on: Exception types that are worth retrying.

    Returns:
        The operation's result.
    """
    backoff = delay
    for attempt in range(retries + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= retries:
                logger.warning(f"Giving up after {retries + 1} attempts: {e}")
                raise
            logger.warning(
                f"Remote call failed ({e}), attempt {attempt + 1}/{retries + 1}; "
                f"retrying in {backoff:.2f}s"
            )
            await asyncio.sleep(backoff)
            backoff *= 2

    # Unreachable: the loop either returns or raises
    raise RuntimeError("retry loop exited without result")
