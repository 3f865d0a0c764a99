"""Per-identity locking with an exclusive mode for cross-identity work."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class IdentityLocks:
    """Serializes work per identity key.

    `hold(key)` admits one holder per key while allowing different keys to
    proceed concurrently. `hold_all()` waits until no key is held, then
    keeps every new `hold(key)` waiting until it is released.

    Example:
        >>> locks = IdentityLocks()
        >>> async with locks.hold("did:plc:abc"):
        ...     ...  # read, decide, merge, write
        >>> async with locks.hold_all():
        ...     ...  # sweep or prune across identities
    """

    def __init__(self) -> None:
        """Initialize with no keys held."""
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders and waiters per key; a key's lock is dropped at zero
        self._holders: dict[str, int] = {}
        self._condition = asyncio.Condition()
        self._active = 0
        self._exclusive = False

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for one identity."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._active += 1
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]
            async with self._condition:
                self._active -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def hold_all(self) -> AsyncIterator[None]:
        """Hold every identity at once."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._exclusive = True
            await self._condition.wait_for(lambda: self._active == 0)
        try:
            yield
        finally:
            async with self._condition:
                self._exclusive = False
                self._condition.notify_all()
