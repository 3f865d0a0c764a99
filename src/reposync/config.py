"""Configuration utilities for reposync.

This module provides project root discovery and the sync settings read
from `[tool.reposync]` in pyproject.toml or from a `.reposync.toml` file.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from reposync.core.exceptions import ConfigurationError


SETTINGS_FILE = ".reposync.toml"


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Tunable settings for syncing, caching and detection.

    Attributes:
        time_window_minutes: Mass-operation window length.
        min_operation_count: Operations needed in a window to form a cluster.
        cache_size_ceiling_bytes: Cache size that triggers eviction.
        freshness_window_ms: Cache age below which no revision check is made.
        download_timeout_ms: Per-request download deadline.
        max_concurrent_downloads: Downloads in flight during batch syncs.
        retry_max_attempts: Attempts per endpoint for transient failures.
        retry_base_delay_ms: Delay before the first retry; doubles each retry.
        fallback_endpoint: Host tried after (or instead of) an identity's PDS.
    """

    time_window_minutes: int = 5
    min_operation_count: int = 10
    cache_size_ceiling_bytes: int = 4 * 1024 * 1024
    freshness_window_ms: int = 24 * 60 * 60 * 1000
    download_timeout_ms: int = 120_000
    max_concurrent_downloads: int = 5
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    fallback_endpoint: str = "https://bsky.network"

    def __post_init__(self) -> None:
        """Validate value ranges."""
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type == "int" and (isinstance(value, bool) or not isinstance(value, int)):
                raise ConfigurationError(f"Setting '{f.name}' must be an integer")
            if f.type == "str" and not isinstance(value, str):
                raise ConfigurationError(f"Setting '{f.name}' must be a string")
        if self.time_window_minutes <= 0 or self.min_operation_count <= 0:
            raise ConfigurationError("Detection window and minimum count must be positive")
        if self.cache_size_ceiling_bytes <= 0:
            raise ConfigurationError("cache_size_ceiling_bytes must be positive")
        if self.download_timeout_ms <= 0:
            raise ConfigurationError("download_timeout_ms must be positive")
        if self.max_concurrent_downloads < 1 or self.retry_max_attempts < 1:
            raise ConfigurationError(
                "max_concurrent_downloads and retry_max_attempts must be at least 1"
            )
        if self.freshness_window_ms < 0 or self.retry_base_delay_ms < 0:
            raise ConfigurationError("Durations cannot be negative")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> SyncSettings:
        """Build settings from a TOML table, using dashes or underscores.

        Raises:
            ConfigurationError: If a key is unknown or a value has the wrong type.
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ConfigurationError(
                    f"Unknown setting '{key}'. Known settings: {', '.join(sorted(known))}"
                )
            values[name] = value
        return cls(**values)


def find_project_root(start: Path | None = None) -> Path:
    """Locate the directory that owns the settings and the cache directory.

    Walks up from start. At each level a .reposync.toml, a pyproject.toml
    or a .git entry marks the root; the nearest level wins.

    Args:
        start: First directory to check. Defaults to the working directory.

    Returns:
        The root, or start itself (resolved) when no level has a marker.

    Example:
        >>> from reposync.config import find_project_root
        >>> root = find_project_root()
        >>> store_dir = root / ".reposync"
    """
    if start is None:
        start = Path.cwd()

    markers = [SETTINGS_FILE, "pyproject.toml", ".git"]
    current = start.resolve()

    for parent in [current, *current.parents]:
        for marker in markers:
            if (parent / marker).exists():
                return parent

    return start.resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_settings(root: Path | None = None) -> SyncSettings:
    """Load settings for a project.

    `.reposync.toml` (top-level keys) wins over `[tool.reposync]` in
    pyproject.toml. Without either, defaults are returned.

    Args:
        root: Project root. If None, discovered from the current directory.

    Returns:
        The loaded settings.

    Raises:
        ConfigurationError: If a file is invalid or holds unknown keys.
    """
    if root is None:
        root = find_project_root()

    settings_file = root / SETTINGS_FILE
    if settings_file.exists():
        return SyncSettings.from_mapping(_read_toml(settings_file))

    pyproject = root / "pyproject.toml"
    if pyproject.exists():
        table = _read_toml(pyproject).get("tool", {}).get("reposync", {})
        if not isinstance(table, dict):
            raise ConfigurationError("[tool.reposync] must be a table")
        return SyncSettings.from_mapping(table)

    return SyncSettings()
