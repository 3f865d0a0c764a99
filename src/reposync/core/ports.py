"""Ports between the sync core and its adapters.

The core reaches hosts, storage, the terminal and the task scheduler only
through these protocols.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable


if TYPE_CHECKING:
    from reposync.core.models import LatestCommit

ProgressCallback = Callable[[int, int], None]

T = TypeVar("T")


@runtime_checkable
class RepoTransportPort(Protocol):
    """Fetches repository archives and revision heads from hosts."""

    async def download(
        self,
        did: str,
        endpoint: str | None = None,
        since: str | None = None,
        *,
        deadline_ms: int | None = None,
        progress: ProgressReporter | None = None,
    ) -> bytes:
        """Download a repository archive, full or since a revision.

        Args:
            did: Repository DID.
            endpoint: Optional primary host tried before the fallback host.
            since: Previous revision for an incremental download.
            deadline_ms: Per-request deadline. None uses the adapter default.
            progress: Optional reporter for stage strings and byte counts.

        Returns:
            The archive bytes.

        Raises:
            IncrementalUnsupportedError: If `since` was rejected.
            TransportError: If every endpoint failed.
        """
        ...

    async def get_latest_commit(
        self, did: str, endpoint: str | None = None
    ) -> LatestCommit | None:
        """Get the repository head, or None if no endpoint answered."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


@runtime_checkable
class KeyValueStorePort(Protocol):
    """Generic persistent key/value store holding JSON-compatible values."""

    async def get(self, key: str) -> Any | None:
        """Return the value for key, or None if absent."""
        ...

    async def set(self, key: str, value: Any) -> None:
        """Store a value.

        Raises:
            QuotaExceededError: If the store cannot hold the value.
        """
        ...

    async def remove(self, key: str) -> None:
        """Delete a key. Missing keys are ignored."""
        ...

    def estimate_size(self, value: Any) -> int:
        """Serialized size of a value in bytes, as the store would hold it."""
        ...


@runtime_checkable
class ProgressReporter(Protocol):
    """Receives stage messages and download byte counts per repository."""

    def stage(self, name: str, message: str) -> None:
        """Report a free-text stage for a task.

        Args:
            name: Task name (usually the DID being synced).
            message: Stage description, e.g. "Parsing repository...".
        """
        ...

    def start_task(self, name: str, total: int) -> ProgressCallback:
        """Begin byte counting for a download.

        Args:
            name: Task name (the DID being downloaded).
            total: Total bytes to download, or 0 when unknown.

        Returns:
            Callback taking (bytes so far, total bytes).
        """
        ...

    def finish_task(self, name: str) -> None:
        """End byte counting for a download started with start_task()."""
        ...


class NullProgressReporter:
    """Reporter used when a caller passes no progress reporter."""

    def stage(self, name: str, message: str) -> None:
        """Do nothing."""
        _ = name, message

    def start_task(self, name: str, total: int) -> ProgressCallback:  # noqa: ARG002
        """Return a callback that ignores its arguments."""
        return lambda _downloaded, _total: None

    def finish_task(self, name: str) -> None:
        """Do nothing."""
        _ = name


@runtime_checkable
class TaskRunnerPort(Protocol):
    """Runs coroutine functions under a concurrency policy.

    Abstracts over the fan-out strategy so the core can cap in-flight
    downloads without owning the policy, maintaining "concurrency at
    the edges".
    """

    async def run(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await fn(*args, **kwargs) once the policy admits it.

        Args:
            fn: Coroutine function to run.
            *args: Positional arguments to pass to fn.
            **kwargs: Keyword arguments to pass to fn.

        Returns:
            The coroutine's result.
        """
        ...
