"""Retry and pacing helpers for calls to external services."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
from typing import TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``operation`` until it succeeds or ``max_attempts`` is reached.

    Waits ``base_delay * 2 ** (attempt - 1)`` seconds between attempts.
    Exceptions outside ``retry_on`` propagate immediately; the last retryable
    exception is re-raised once the attempts are exhausted.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1.")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                LOGGER.error(
                    "%s failed after %s attempt(s): %s",
                    description,
                    attempt,
                    exc,
                )
                raise
            delay = base_delay * (2 ** (attempt - 1))
            LOGGER.warning(
                "%s failed (attempt %s/%s): %s; retrying in %.1fs",
                description,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            await sleep(delay)


async def gather_in_groups(
    factories: Sequence[Callable[[], Awaitable[T]]],
    *,
    group_size: int = 1,
    delay: float = 0.0,
    sleep: Sleep = asyncio.sleep,
) -> list[T | BaseException]:
    """Run coroutine factories in fixed-size concurrent groups.

    Groups run one after another with ``delay`` seconds between them, which
    keeps request rates under external limits. Results keep input order;
    a failing call yields its exception instead of aborting the others.
    """

    if group_size < 1:
        raise ValueError("group_size must be at least 1.")

    results: list[T | BaseException] = []
    for start in range(0, len(factories), group_size):
        if start and delay > 0:
            await sleep(delay)
        group = factories[start : start + group_size]
        outcomes = await asyncio.gather(*(factory() for factory in group), return_exceptions=True)
        results.extend(outcomes)
    return results
