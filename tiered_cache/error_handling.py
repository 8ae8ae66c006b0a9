"""Error handling utilities for L2 calls.

This module provides:
- Bounded timeouts around backend calls
- Retry with exponential backoff for transient failures
- Translation of backend failures into ``StoreUnavailable``
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .errors import CacheError, StoreUnavailable

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_async_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for async retry logic with exponential backoff."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            delay = base_delay
            last_exception: BaseException | None = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == max_attempts - 1:
                        break

                    _logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {e}")
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

            raise StoreUnavailable(
                f"All {max_attempts} attempts failed for {func.__name__}: {last_exception}"
            ) from last_exception

        return wrapper

    return decorator


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    timeout: float,
    max_retries: int = 0,
    retry_delay: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (ConnectionError, OSError, asyncio.TimeoutError),
) -> T:
    """Run ``operation`` with a per-attempt timeout and up to ``max_retries`` retries.

    Cache errors raised by the operation itself (e.g. serialization) are not retried.
    """

    async def attempt() -> Any:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except CacheError:
            raise
        except asyncio.TimeoutError as e:
            raise asyncio.TimeoutError(f"{name} timed out after {timeout}s") from e

    attempt.__name__ = name
    retrying = retry_async_with_backoff(
        max_attempts=max(1, max_retries + 1),
        base_delay=retry_delay,
        exceptions=retry_on,
    )(attempt)
    return await retrying()
