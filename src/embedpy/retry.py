"""Bounded retry with exponential backoff for remote and extraction calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from embedpy.config import ManagerConfiguration
from embedpy.errors import ArchiveExtractionError, ReleaseSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Return True for failures a later attempt could plausibly avoid."""
    if isinstance(error, (ReleaseSourceError, ArchiveExtractionError)):
        return error.transient
    return isinstance(error, httpx.TransportError)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: ManagerConfiguration,
    description: str,
) -> T:
    """Await ``operation()`` up to ``config.retry_attempts`` times.

    Only transient failures are retried; anything else, including
    cancellation, propagates on the first occurrence. When attempts are
    exhausted the last error is re-raised.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        config: Supplies attempt count and delay policy.
        description: Human-readable name of the operation, for log messages.
    """
    attempts = max(1, config.retry_attempts)
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_transient(e):
                raise
            delay = config.retry_delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                description, attempt, attempts, e, delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
