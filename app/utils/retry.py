"""Retry helpers without external dependencies."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable

RETRY_EXCEPTIONS = (OSError, asyncio.TimeoutError)


def retry_async(
    func: Callable[..., Awaitable],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
):
    """Wrap ``func`` so failures are retried with a linear backoff.

    The wait before attempt ``n + 1`` is ``base_delay * n``. Exceptions for which
    ``should_retry`` returns False are raised immediately; the last exception is
    raised once ``attempts`` calls have failed.
    """
    attempts = max(1, attempts)
    if should_retry is None:
        should_retry = lambda exc: isinstance(exc, RETRY_EXCEPTIONS)  # noqa: E731

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if attempt == attempts or not should_retry(exc):
                    raise
                delay = base_delay * attempt
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                await sleep(delay)

    return wrapper
