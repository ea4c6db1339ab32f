"""Exponential backoff for rate-limited upstream calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

log = logging.getLogger('banksync.backoff')

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0
RATE_LIMIT_STATUS = 429


def is_rate_limited(exc: BaseException) -> bool:
    """Check if an error carries the HTTP 429 signal."""
    return getattr(exc, "status_code", None) == RATE_LIMIT_STATUS


class BackoffExecutor:
    """Retries a call on rate limiting with exponentially growing delays.

    Only errors accepted by ``is_retryable`` are retried; anything else
    propagates on the first occurrence. The bound is the attempt count, not
    wall-clock time.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        is_retryable: Callable[[BaseException], bool] = is_rate_limited,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._is_retryable = is_retryable
        self._sleep = sleep

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        """Run ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out."""
        attempts = self._max_attempts if max_attempts is None else max_attempts
        delay_unit = self._base_delay if base_delay is None else base_delay
        if attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {attempts}")
        for attempt in range(attempts):
            try:
                return await fn()
            except Exception as e:
                if not self._is_retryable(e) or attempt == attempts - 1:
                    raise
                delay = delay_unit * (2 ** attempt)
                log.warning(
                    f'Rate limited, retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})'
                )
                await self._sleep(delay)
