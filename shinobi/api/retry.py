"""
Retry wrapper for indexer calls.

Only transient failures (transport errors, timeouts, 429/5xx) are retried,
with a fixed delay between attempts. Anything else propagates on the first
failure so callers see real errors immediately.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from shinobi import config
from shinobi.errors import IndexerUnavailableError, TransientIndexerError
from shinobi.logging_config import get_logger

logger = get_logger("api.retry")

T = TypeVar("T")


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = config.INDEXER_MAX_RETRIES,
    delay: float = config.INDEXER_RETRY_DELAY,
    description: str = "Indexer call",
    on_attempt: Optional[Callable[[int, str], None]] = None,
    **kwargs,
) -> T:
    """
    Await fn(*args, **kwargs), retrying transient indexer failures.

    Args:
        fn: Coroutine function to call
        max_retries: Maximum attempts (default: INDEXER_MAX_RETRIES)
        delay: Fixed seconds to wait between attempts
        description: Human-readable description for logging
        on_attempt: Optional callback called on each attempt: (attempt_num, status_msg)

    Returns:
        Whatever fn returns

    Raises:
        IndexerUnavailableError: If every attempt failed transiently
    """
    attempts = max(1, max_retries)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        status_msg = f"{description} (attempt {attempt + 1}/{attempts})"
        if on_attempt:
            on_attempt(attempt + 1, status_msg)
        try:
            return await fn(*args, **kwargs)
        except TransientIndexerError as e:
            last_error = e
            if attempt < attempts - 1:
                logger.warning(f"{status_msg} failed: {e}; retrying in {delay}s")
                await asyncio.sleep(delay)
            else:
                logger.error(f"{status_msg} failed: {e}")

    raise IndexerUnavailableError(
        f"{description} failed after {attempts} attempts. Last error: {last_error}"
    ) from last_error
