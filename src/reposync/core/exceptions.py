"""Domain exceptions for reposync.

All library errors inherit from RepoSyncError, allowing users to catch
any library exception with a single except clause. Each exception provides
a recovery_hint property with guidance on resolving the error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from pathlib import Path

    from reposync.core.models import CachedDerivedState, SharedSubResource


class RepoSyncError(Exception):
    """Base class for all reposync exceptions.

    Catch this to handle any error from the library.
    """

    @property
    def recovery_hint(self) -> str | None:
        """Optional guidance on how to resolve this error."""
        return None


class TransportError(RepoSyncError):
    """Base class for errors talking to a repository host.

    Attributes:
        endpoint: Base URL of the host that produced the error.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        endpoint: str,
        cause: Exception | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.cause = cause
        super().__init__(message)


class NetworkFailureError(TransportError):
    """Raised when the host cannot be reached (DNS, refused, reset)."""

    @property
    def recovery_hint(self) -> str:
        """Suggest checking connectivity."""
        return f"Check network connectivity to {self.endpoint}"


class HttpStatusError(TransportError):
    """Raised when the host answers with a non-success status.

    Attributes:
        status: The HTTP status code.
    """

    def __init__(
        self,
        message: str,
        endpoint: str,
        status: int,
        cause: Exception | None = None,
    ) -> None:
        self.status = status
        super().__init__(message, endpoint, cause)

    @property
    def is_transient(self) -> bool:
        """Whether the status is worth retrying (5xx or 429)."""
        return self.status == 429 or self.status >= 500

    @property
    def recovery_hint(self) -> str:
        """Suggest waiting out rate limits or checking the identity."""
        if self.status == 429:
            return "The host is rate limiting requests; retry later"
        if self.status in (401, 403):
            return "The host refused access to this repository"
        if self.status == 404:
            return "Verify the DID exists and is hosted on this endpoint"
        return f"The host at {self.endpoint} returned HTTP {self.status}"


class DownloadTimeoutError(TransportError, TimeoutError):
    """Raised when a request exceeds its deadline.

    Attributes:
        deadline_ms: The deadline that was exceeded, in milliseconds.
    """

    def __init__(
        self,
        message: str,
        endpoint: str,
        deadline_ms: int,
        cause: Exception | None = None,
    ) -> None:
        self.deadline_ms = deadline_ms
        super().__init__(message, endpoint, cause)

    @property
    def recovery_hint(self) -> str:
        """Suggest a longer deadline for large repositories."""
        return "Large repositories may need a longer download_timeout_ms"


class IncrementalUnsupportedError(TransportError):
    """Raised when the host rejects the `since` parameter of a repo download."""

    @property
    def recovery_hint(self) -> str:
        """Explain the fallback."""
        return "Request the full repository instead of a diff"


class DecodeError(RepoSyncError):
    """Raised when a single repository entry cannot be decoded.

    The decoder always contains this error at the entry level; it is
    exposed so custom record parsers can signal a malformed payload.

    Attributes:
        collection: Collection NSID of the entry.
        record_key: Record key of the entry.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        collection: str = "",
        record_key: str = "",
        cause: Exception | None = None,
    ) -> None:
        self.collection = collection
        self.record_key = record_key
        self.cause = cause
        super().__init__(message)


class ArchiveFormatError(RepoSyncError):
    """Raised when the archive framing itself is unreadable.

    Unlike DecodeError, nothing can be enumerated from the archive, so
    the whole decode fails.
    """

    @property
    def recovery_hint(self) -> str:
        """Suggest re-downloading."""
        return "The download may be truncated; retry the sync"


class CacheError(RepoSyncError):
    """Base class for cache-related errors."""

    pass


class CacheCorruptError(CacheError):
    """Raised when a stored cache record is corrupt or unreadable.

    Attributes:
        key: The store key of the corrupt record.
        path: The path to the corrupt file, for file-backed stores.
    """

    def __init__(
        self,
        message: str,
        key: str,
        path: Path | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.key = key
        self.path = path
        self.cause = cause
        super().__init__(message)

    @property
    def recovery_hint(self) -> str:
        """Suggest clearing the corrupt record."""
        return f"Delete the '{self.key}' record (reposync cache clear) and re-sync"


class QuotaExceededError(CacheError):
    """Raised by a store when a write would exceed its quota.

    Attributes:
        key: The key being written.
        size: Serialized size of the rejected value in bytes.
        quota: The store's quota in bytes.
    """

    def __init__(self, key: str, size: int, quota: int) -> None:
        self.key = key
        self.size = size
        self.quota = quota
        super().__init__(f"Writing '{key}' ({size} bytes) exceeds quota of {quota} bytes")


class CacheWriteError(CacheError):
    """Raised when derived state cannot be persisted even after pruning.

    Attributes:
        identity: The identity (or shared list URI) that could not be written.
        pending_state: The unsaved in-memory state or shared list, kept so
            the caller can retry once space has been freed.
    """

    def __init__(
        self,
        message: str,
        identity: str,
        pending_state: CachedDerivedState | SharedSubResource,
        cause: Exception | None = None,
    ) -> None:
        self.identity = identity
        self.pending_state = pending_state
        self.cause = cause
        super().__init__(message)

    @property
    def recovery_hint(self) -> str:
        """Suggest freeing space."""
        return "Free space in the cache store (e.g. reposync cache prune) and retry"


class ConfigurationError(RepoSyncError):
    """Raised for configuration problems (unknown keys, bad values)."""

    pass
