"""JSON-file key/value store implementing KeyValueStorePort."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from pathlib import Path
from typing import Any

from reposync.core.exceptions import CacheCorruptError, QuotaExceededError


def encode(value: Any) -> str:
    """Compact JSON encoding used for storage and size estimates."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def serialized_size(value: Any) -> int:
    """Size in bytes of a value's compact JSON encoding."""
    return len(encode(value).encode("utf-8"))


class JsonFileStore:
    """Key/value store keeping one JSON file per key in a directory.

    Writes go to a temporary file that is then renamed over the target,
    so a crash never leaves a half-written record.

    Attributes:
        store_dir: Directory holding the JSON files.
        quota_bytes: Optional limit on the total size of all records.
    """

    def __init__(self, store_dir: Path, quota_bytes: int | None = None) -> None:
        """Initialize the store with a directory path.

        Args:
            store_dir: Directory where records will be stored.
            quota_bytes: Optional limit; writes beyond it raise QuotaExceededError.
        """
        self.store_dir = store_dir
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        """Get the path for a record."""
        return self.store_dir / f"{key}.json"

    def _read(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with path.open(encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise CacheCorruptError(
                f"Cache record corrupt for '{key}'",
                key=key,
                path=path,
                cause=e,
            ) from e

    def _write(self, key: str, data: str) -> None:
        path = self._path(key)
        if self.quota_bytes is not None:
            size = len(data.encode("utf-8"))
            others = self.size() - (path.stat().st_size if path.exists() else 0)
            if others + size > self.quota_bytes:
                raise QuotaExceededError(key, size, self.quota_bytes)

        self.store_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)

    async def get(self, key: str) -> Any | None:
        """Get a record, or None if absent.

        Raises:
            CacheCorruptError: If the file exists but is not valid JSON.
        """
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any) -> None:
        """Store a record.

        Raises:
            QuotaExceededError: If the write would exceed quota_bytes.
        """
        await asyncio.to_thread(self._write, key, encode(value))

    async def remove(self, key: str) -> None:
        """Remove a record. Missing records are ignored."""
        self._path(key).unlink(missing_ok=True)

    def estimate_size(self, value: Any) -> int:
        """Size of a value as it would be written, in bytes."""
        return serialized_size(value)

    def size(self) -> int:
        """Total size of all records on disk in bytes."""
        total_size = 0
        if not self.store_dir.exists():
            return 0

        for file_path in self.store_dir.glob("*.json"):
            with contextlib.suppress(OSError):
                total_size += file_path.stat().st_size

        return total_size
