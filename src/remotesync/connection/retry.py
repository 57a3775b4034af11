"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Await a coroutine factory, retrying transient failures
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from remotesync.core.errors import AuthenticationError, ConfigurationError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 0.5  # seconds
DEFAULT_MAX_BACKOFF = 8.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Failures that retrying cannot fix
NON_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    AuthenticationError,
    ConfigurationError,
)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    retryable_exceptions: tuple[type[Exception], ...] = (TransportError,),
) -> T:
    """Await ``func()`` with exponential backoff retry.

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt.
        max_retries: Maximum number of retry attempts.
        initial_backoff: Initial backoff time in seconds.
        max_backoff: Maximum backoff time in seconds.
        backoff_multiplier: Multiplier for each retry.
        retryable_exceptions: Tuple of exception types to retry on.

    Returns:
        Result of the awaitable.

    Raises:
        The last exception if all retries fail, or immediately for
        authentication and configuration errors.
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except NON_RETRYABLE_EXCEPTIONS:
            raise
        except retryable_exceptions as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {backoff:.1f}s..."
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * backoff_multiplier, max_backoff)

    raise RuntimeError("Unexpected retry loop exit")
