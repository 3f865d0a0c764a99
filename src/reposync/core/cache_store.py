"""Size-bounded cache of derived state over a generic key/value store.

The cache is two whole records in the store: the identity map (derived
state and revision per DID) and the shared list map (list contents by
URI, referenced from identities' subscribed lists). Every mutation reads
a record, changes it and writes it back, so mutations are serialized by
an internal lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from reposync.core.exceptions import (
    CacheCorruptError,
    CacheWriteError,
    QuotaExceededError,
)
from reposync.core.models import (
    CacheEntry,
    CachedDerivedState,
    RevisionState,
    SharedSubResource,
)
from reposync.core.ports import KeyValueStorePort


logger = logging.getLogger(__name__)

IDENTITIES_KEY = "reposync.identities"
SHARED_KEY = "reposync.shared_lists"

DEFAULT_CEILING_BYTES = 4 * 1024 * 1024
EVICTION_TARGET_RATIO = 0.8


def _last_sync(entry: Mapping[str, Any]) -> int:
    return int(entry.get("state", {}).get("last_sync_ms", 0))


def _parse_entry(identity: str, raw: Mapping[str, Any]) -> CacheEntry:
    try:
        return CacheEntry(
            state=CachedDerivedState.from_dict(raw["state"]),
            revision=RevisionState.from_dict(raw["revision"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruptError(
            f"Cache entry for '{identity}' is corrupt", key=IDENTITIES_KEY, cause=e
        ) from e


def _parse_shared(uri: str, raw: Mapping[str, Any]) -> SharedSubResource:
    try:
        return SharedSubResource.from_dict(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruptError(f"Shared list '{uri}' is corrupt", key=SHARED_KEY, cause=e) from e


def _subscriptions(identities: Mapping[str, Mapping[str, Any]]) -> set[str]:
    referenced: set[str] = set()
    for entry in identities.values():
        referenced.update(entry.get("state", {}).get("subscribed_lists", ()))
    return referenced


class BoundedCacheStore:
    """Per-identity derived state plus shared lists, under a byte ceiling.

    Sizes are measured with the store's own estimate of the serialized
    records. When a write takes the total over the ceiling, other
    identities are evicted, least recently synced first, until the total
    is at most 80% of the ceiling.

    Example:
        >>> cache = BoundedCacheStore(MemoryStore())
        >>> await cache.write("did:plc:abc", state, revision)
        >>> entry = await cache.read("did:plc:abc")
    """

    def __init__(
        self,
        store: KeyValueStorePort,
        ceiling_bytes: int = DEFAULT_CEILING_BYTES,
    ) -> None:
        """Initialize the cache.

        Args:
            store: Backing key/value store.
            ceiling_bytes: Total serialized size that triggers eviction.
        """
        if ceiling_bytes <= 0:
            raise ValueError("ceiling_bytes must be positive")
        self._store = store
        self.ceiling_bytes = ceiling_bytes
        self._lock = asyncio.Lock()

    # Record access

    async def _load(self, key: str) -> dict[str, Any]:
        value = await self._store.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise CacheCorruptError(f"Cache record '{key}' is not a mapping", key=key)
        return value

    def _entry_size(self, key: str, value: Any) -> int:
        return self._store.estimate_size({key: value})

    def _map_size(self, sizes: Iterable[int]) -> int:
        # Size of {a, b, ...} from the sizes of {a}, {b}, ...
        sizes = list(sizes)
        if not sizes:
            return self._store.estimate_size({})
        return 1 + sum(size - 1 for size in sizes)

    # Identity records

    async def read(self, identity: str) -> CacheEntry | None:
        """Read the cached state and revision of an identity.

        Raises:
            CacheCorruptError: If the stored entry cannot be parsed.
        """
        identities = await self._load(IDENTITIES_KEY)
        raw = identities.get(identity)
        return None if raw is None else _parse_entry(identity, raw)

    async def identities(self) -> list[CacheEntry]:
        """All cached identities, most recently synced first."""
        identities = await self._load(IDENTITIES_KEY)
        entries = [_parse_entry(identity, raw) for identity, raw in identities.items()]
        entries.sort(key=lambda e: e.state.last_sync_ms, reverse=True)
        return entries

    async def write(
        self,
        identity: str,
        state: CachedDerivedState,
        revision: RevisionState,
    ) -> None:
        """Persist an identity's state, evicting others if over the ceiling.

        The identity being written is never evicted by its own write.

        Raises:
            CacheWriteError: If the store rejects the write and nothing is
                left to evict. Carries the unsaved state.
        """
        async with self._lock:
            identities = await self._load(IDENTITIES_KEY)
            shared = await self._load(SHARED_KEY)
            identities[identity] = {"state": state.to_dict(), "revision": revision.to_dict()}

            evicted = 0
            if self._total(identities, shared) > self.ceiling_bytes:
                target = int(self.ceiling_bytes * EVICTION_TARGET_RATIO)
                evicted = self._evict(identities, shared, target, protect=identity)
                logger.info(
                    "Cache over %d bytes; evicted %d identities", self.ceiling_bytes, evicted
                )

            # Shared lists are only trimmed once the identity map is saved
            evicted += await self._persist_identities(identities, identity, state)
            if evicted:
                self._drop_orphans(identities, shared)
                await self._store.set(SHARED_KEY, shared)

    async def _persist_identities(
        self,
        identities: dict[str, Any],
        identity: str,
        state: CachedDerivedState,
    ) -> int:
        evicted = 0
        while True:
            try:
                await self._store.set(IDENTITIES_KEY, identities)
                return evicted
            except QuotaExceededError as e:
                others = [d for d in identities if d != identity]
                if not others:
                    raise CacheWriteError(
                        f"Cannot store state for '{identity}': {e}",
                        identity=identity,
                        pending_state=state,
                        cause=e,
                    ) from e
                victim = min(others, key=lambda d: _last_sync(identities[d]))
                logger.warning("Store quota exceeded; evicting %s", victim)
                del identities[victim]
                evicted += 1

    async def remove(self, identity: str) -> bool:
        """Remove an identity. Returns True if it was cached."""
        async with self._lock:
            identities = await self._load(IDENTITIES_KEY)
            if identities.pop(identity, None) is None:
                return False
            await self._store.set(IDENTITIES_KEY, identities)
            return True

    async def clear(self) -> None:
        """Remove every identity and shared list."""
        async with self._lock:
            await self._store.remove(IDENTITIES_KEY)
            await self._store.remove(SHARED_KEY)

    # Shared lists

    async def get_shared(self, uri: str) -> SharedSubResource | None:
        """Read a shared list by URI."""
        shared = await self._load(SHARED_KEY)
        raw = shared.get(uri)
        if raw is None:
            return None
        return _parse_shared(uri, raw)

    async def shared_lists(self) -> dict[str, SharedSubResource]:
        """Every stored shared list, keyed by URI."""
        shared = await self._load(SHARED_KEY)
        return {uri: _parse_shared(uri, raw) for uri, raw in shared.items()}

    async def shared_uris(self) -> list[str]:
        """URIs of every stored shared list."""
        return sorted(await self._load(SHARED_KEY))

    async def put_shared(self, resource: SharedSubResource) -> None:
        """Store or replace a shared list.

        When the store is out of space, identities that do not subscribe to
        the list are evicted oldest first, with the lists only they
        referenced, until the write fits.

        Raises:
            CacheWriteError: If the store rejects the write and nothing is
                left to evict. Carries the unsaved list.
        """
        async with self._lock:
            shared = await self._load(SHARED_KEY)
            shared[resource.uri] = resource.to_dict()
            identities: dict[str, Any] | None = None
            while True:
                try:
                    await self._store.set(SHARED_KEY, shared)
                    return
                except QuotaExceededError as e:
                    if identities is None:
                        identities = await self._load(IDENTITIES_KEY)
                    others = [
                        d
                        for d, entry in identities.items()
                        if resource.uri not in _subscriptions({d: entry})
                    ]
                    if not others:
                        raise CacheWriteError(
                            f"Cannot store shared list '{resource.uri}': {e}",
                            identity=resource.uri,
                            pending_state=resource,
                            cause=e,
                        ) from e
                    victim = min(others, key=lambda d: _last_sync(identities[d]))
                    logger.warning("Store quota exceeded; evicting %s", victim)
                    del identities[victim]
                    await self._store.set(IDENTITIES_KEY, identities)
                    referenced = _subscriptions(identities) | {resource.uri}
                    for uri in [u for u in shared if u not in referenced]:
                        del shared[uri]

    async def sweep_orphans(self) -> int:
        """Remove shared lists no cached identity subscribes to.

        Returns:
            Number of shared lists removed.
        """
        async with self._lock:
            identities = await self._load(IDENTITIES_KEY)
            shared = await self._load(SHARED_KEY)
            removed = self._drop_orphans(identities, shared)
            if removed:
                await self._store.set(SHARED_KEY, shared)
                logger.info("Swept %d orphaned shared lists", removed)
            return removed

    # Size management

    def _total(self, identities: Mapping[str, Any], shared: Mapping[str, Any]) -> int:
        return self._map_size(
            self._entry_size(k, v) for k, v in identities.items()
        ) + self._map_size(self._entry_size(k, v) for k, v in shared.items())

    async def total_size(self) -> int:
        """Current serialized size of both cache records in bytes."""
        identities = await self._load(IDENTITIES_KEY)
        shared = await self._load(SHARED_KEY)
        return self._store.estimate_size(identities) + self._store.estimate_size(shared)

    def _drop_orphans(self, identities: Mapping[str, Any], shared: dict[str, Any]) -> int:
        referenced = _subscriptions(identities)
        orphans = [uri for uri in shared if uri not in referenced]
        for uri in orphans:
            del shared[uri]
        return len(orphans)

    def _evict(
        self,
        identities: dict[str, Any],
        shared: dict[str, Any],
        target: int,
        protect: str | None,
    ) -> int:
        """Evict identities oldest first until the total is at most target.

        Shared lists left unreferenced by an eviction go with it. Mutates
        both maps in place and returns the number of identities evicted.
        """
        id_sizes = {k: self._entry_size(k, v) for k, v in identities.items()}
        shared_sizes = {k: self._entry_size(k, v) for k, v in shared.items()}

        def total() -> int:
            return self._map_size(id_sizes.values()) + self._map_size(shared_sizes.values())

        candidates = sorted(
            (d for d in identities if d != protect),
            key=lambda d: _last_sync(identities[d]),
        )
        evicted = 0
        for victim in candidates:
            if total() <= target:
                break
            del identities[victim]
            del id_sizes[victim]
            evicted += 1
            referenced = _subscriptions(identities)
            for uri in [u for u in shared if u not in referenced]:
                del shared[uri]
                del shared_sizes[uri]
            logger.debug("Evicted %s from cache", victim)
        return evicted

    async def prune(self, max_bytes: int) -> int:
        """Evict least recently synced identities until within max_bytes.

        The most recently synced identity is kept unless its own entry
        alone exceeds max_bytes.

        Args:
            max_bytes: Size budget in bytes.

        Returns:
            Number of identities removed. 0 if already within budget.
        """
        async with self._lock:
            identities = await self._load(IDENTITIES_KEY)
            shared = await self._load(SHARED_KEY)
            if self._total(identities, shared) <= max_bytes:
                return 0

            self._drop_orphans(identities, shared)
            newest = max(identities, key=lambda d: _last_sync(identities[d]), default=None)
            removed = self._evict(identities, shared, max_bytes, protect=newest)
            if self._total(identities, shared) > max_bytes and newest in identities:
                removed += self._evict(identities, shared, max_bytes, protect=None)
            await self._store.set(IDENTITIES_KEY, identities)
            await self._store.set(SHARED_KEY, shared)
            logger.info("Pruned %d identities to fit %d bytes", removed, max_bytes)
            return removed
