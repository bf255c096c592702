"""Async helpers for pacing, retrying, and fanning out embedding work."""

import asyncio
import random
import time
from collections.abc import Awaitable
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from openai import APIError, RateLimitError

from lectio.logging import get_logger

logger = get_logger("utils")

T = TypeVar("T")
R = TypeVar("R")


class RateLimiter:
    """Spaces out calls so no more than ``calls_per_minute`` start per minute."""

    def __init__(self, calls_per_minute: int = 60):
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be positive")
        self.calls_per_minute = calls_per_minute
        self.min_interval = 60.0 / calls_per_minute
        self.last_call = 0.0
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock(self) -> asyncio.Lock:
        # asyncio.Lock is bound to the loop it is first used on
        loop_id = id(asyncio.get_running_loop())
        if loop_id not in self._locks:
            self._locks = {loop_id: asyncio.Lock()}
        return self._locks[loop_id]

    async def wait(self) -> None:
        """Sleep until the next call slot opens."""
        async with self._lock():
            delay = self.last_call + self.min_interval - time.monotonic()
            if delay > 0:
                await asyncio.sleep(delay)
            self.last_call = time.monotonic()


def _is_transient(error: Exception) -> bool:
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, APIError):
        status_code = getattr(error, "status_code", None)
        return status_code is not None and 500 <= status_code < 600
    return False


def retry_with_exponential_backoff(
    max_retries: int = 5,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> Callable:
    """
    Retry an async embedding API call on rate limits and 5xx responses.

    Other errors, including 4xx responses, propagate on the first attempt.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        exponential_base: Growth factor between delays
        jitter: Scale each delay by a random factor in [0.5, 1.5)

    Returns:
        Decorator for async callables
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            delay = initial_delay
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not _is_transient(e):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} still failing after {max_retries} retries: {e}"
                        )
                        raise

                    sleep_for = delay * (0.5 + random.random()) if jitter else delay
                    attempt += 1
                    logger.warning(
                        f"{func.__name__} hit a transient error ({type(e).__name__}); "
                        f"retry {attempt}/{max_retries} in {sleep_for:.1f}s"
                    )
                    await asyncio.sleep(sleep_for)
                    delay = min(delay * exponential_base, max_delay)

        return wrapper

    return decorator


async def process_batch_concurrent(
    items: list[T],
    process_func: Callable[[T], Awaitable[R]],
    batch_size: int,
    progress_callback: Optional[Callable[[int, int, T, R], None]] = None,
) -> list[R]:
    """
    Run ``process_func`` over items, ``batch_size`` at a time.

    Results come back in input order. The first exception raised by
    ``process_func`` propagates, so callers that need per-item isolation
    catch inside ``process_func``.

    Args:
        items: Items to process
        process_func: Async function applied to each item
        batch_size: Maximum calls in flight at once
        progress_callback: Called as (completed, total, item, result) after
            each item finishes

    Returns:
        One result per item, in input order
    """
    total = len(items)
    step = max(1, batch_size)
    completed = 0
    results: list[R] = []

    async def run(item: T) -> R:
        nonlocal completed
        result = await process_func(item)
        completed += 1
        if progress_callback is not None:
            progress_callback(completed, total, item, result)
        return result

    for start in range(0, total, step):
        results.extend(await asyncio.gather(*(run(item) for item in items[start : start + step])))

    return results
