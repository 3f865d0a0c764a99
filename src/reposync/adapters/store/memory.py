"""In-memory key/value store implementing KeyValueStorePort."""

from __future__ import annotations

import json
from typing import Any

from reposync.adapters.store.json_file import encode, serialized_size
from reposync.core.exceptions import QuotaExceededError


class MemoryStore:
    """Key/value store held in a dict, for tests and one-shot runs.

    Values are kept JSON-encoded, so callers never share mutable state
    with the store and sizes match what a persistent store would hold.
    """

    def __init__(self, quota_bytes: int | None = None) -> None:
        """Initialize an empty store.

        Args:
            quota_bytes: Optional limit on the total size of all values.
        """
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        """Get a value, or None if absent."""
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        """Store a value.

        Raises:
            QuotaExceededError: If the write would exceed quota_bytes.
        """
        data = encode(value)
        if self.quota_bytes is not None:
            size = len(data.encode("utf-8"))
            others = sum(
                len(v.encode("utf-8")) for k, v in self._data.items() if k != key
            )
            if others + size > self.quota_bytes:
                raise QuotaExceededError(key, size, self.quota_bytes)
        self._data[key] = data

    async def remove(self, key: str) -> None:
        """Remove a value. Missing keys are ignored."""
        self._data.pop(key, None)

    def estimate_size(self, value: Any) -> int:
        """Size of a value as it would be stored, in bytes."""
        return serialized_size(value)

    def keys(self) -> list[str]:
        """Keys currently stored."""
        return sorted(self._data)
