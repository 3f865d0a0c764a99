"""Task runner adapters implementing TaskRunnerPort."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


class SequentialTaskRunner:
    """Runner that admits one task at a time.

    Used for sequential syncs or when testing. Tasks still run on the
    event loop, but never overlap.
    """

    def __init__(self) -> None:
        """Initialize the runner."""
        self._lock = asyncio.Lock()

    async def run(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await fn once no other task is running.

        Args:
            fn: Coroutine function to run.
            *args: Positional arguments to pass to fn.
            **kwargs: Keyword arguments to pass to fn.

        Returns:
            The coroutine's result.
        """
        async with self._lock:
            return await fn(*args, **kwargs)


class BoundedTaskRunner:
    """Runner capping the number of tasks in flight with a semaphore.

    Moves the concurrency limit out of the core domain into the adapter
    layer, maintaining "concurrency at the edges" architecture.
    """

    def __init__(self, max_concurrent: int = 5) -> None:
        """Initialize the runner.

        Args:
            max_concurrent: Maximum number of tasks running at once.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def run(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await fn once a slot is free.

        Args:
            fn: Coroutine function to run.
            *args: Positional arguments to pass to fn.
            **kwargs: Keyword arguments to pass to fn.

        Returns:
            The coroutine's result.
        """
        async with self._semaphore:
            return await fn(*args, **kwargs)
