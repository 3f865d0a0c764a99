"""Key/value store adapters."""

from reposync.adapters.store.json_file import JsonFileStore
from reposync.adapters.store.memory import MemoryStore


__all__ = ["JsonFileStore", "MemoryStore"]
