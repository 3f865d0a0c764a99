"""Retry with exponential backoff and jitter for transient transport failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from reposync.core.exceptions import HttpStatusError, NetworkFailureError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying on the same endpoint.

    Network failures, 5xx and 429 are transient. Timeouts and other
    4xx statuses are not.
    """
    if isinstance(error, NetworkFailureError):
        return True
    if isinstance(error, HttpStatusError):
        return error.is_transient
    return False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first (>= 1).
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
        jitter: Fraction of each delay randomized (0 disables jitter).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    def __post_init__(self) -> None:
        """Validate attempt count and delays."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")

    def delay(self, retry_number: int) -> float:
        """Seconds to wait before the given retry (1 for the first retry)."""
        delay = min(self.base_delay * (2 ** (retry_number - 1)), self.max_delay)
        if self.jitter:
            delay *= 1 - self.jitter + random.random() * self.jitter
        return delay

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_on: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        """Await fn(), retrying while retry_on accepts the raised error.

        Args:
            fn: Zero-argument coroutine function to call.
            retry_on: Predicate deciding whether an error is retried.

        Returns:
            The first successful result.

        Raises:
            Exception: The last error once attempts are exhausted, or the
                first error retry_on rejects.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except Exception as e:
                if attempt >= self.max_attempts or not retry_on(e):
                    raise
                delay = self.delay(attempt)
                logger.info(
                    "Attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
