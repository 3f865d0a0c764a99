"""reposync - Incremental sync of account repositories with a bounded cache.

This library downloads an account's repository archive, decodes its
records, keeps derived graph state (blocks, follows, list memberships,
blocklist subscriptions) in a size-bounded cache refreshed incrementally
when possible, and detects bursts of mass operations.

Example:
    >>> import asyncio
    >>> from reposync import RepoSync
    >>> async def main():
    ...     async with RepoSync.from_directory() as service:
    ...         outcome = await service.sync("did:plc:abc")
    ...         print(outcome.decision, len(outcome.state.direct_blocks))
    >>> asyncio.run(main())
"""

from reposync.adapters.runner import BoundedTaskRunner, SequentialTaskRunner
from reposync.adapters.store import JsonFileStore, MemoryStore
from reposync.adapters.transport import HttpRepoTransport
from reposync.config import SyncSettings, find_project_root, load_settings
from reposync.core.cache_store import BoundedCacheStore
from reposync.core.clustering import detect_clusters
from reposync.core.decoder import decode, graph_operations
from reposync.core.exceptions import (
    ArchiveFormatError,
    CacheCorruptError,
    CacheError,
    CacheWriteError,
    ConfigurationError,
    DecodeError,
    DownloadTimeoutError,
    HttpStatusError,
    IncrementalUnsupportedError,
    NetworkFailureError,
    QuotaExceededError,
    RepoSyncError,
    TransportError,
)
from reposync.core.merge import merge
from reposync.core.models import (
    BatchReport,
    BlockRelationshipStats,
    CachedDerivedState,
    DecodeResult,
    GraphOperation,
    Identity,
    MassOperationCluster,
    ProfileRelationships,
    RevisionState,
    SharedSubResource,
    SyncDecision,
    SyncOutcome,
)
from reposync.core.ports import (
    KeyValueStorePort,
    NullProgressReporter,
    ProgressCallback,
    ProgressReporter,
    RepoTransportPort,
    TaskRunnerPort,
)
from reposync.core.retry import RetryPolicy
from reposync.core.services import RepoSync
from reposync.progress import RichProgressReporter


__version__ = "0.1.0"

__all__ = [
    "ArchiveFormatError",
    "BatchReport",
    "BlockRelationshipStats",
    "BoundedCacheStore",
    "BoundedTaskRunner",
    "CacheCorruptError",
    "CacheError",
    "CacheWriteError",
    "CachedDerivedState",
    "ConfigurationError",
    "DecodeError",
    "DecodeResult",
    "DownloadTimeoutError",
    "GraphOperation",
    "HttpRepoTransport",
    "HttpStatusError",
    "Identity",
    "IncrementalUnsupportedError",
    "JsonFileStore",
    "KeyValueStorePort",
    "MassOperationCluster",
    "MemoryStore",
    "NetworkFailureError",
    "NullProgressReporter",
    "ProfileRelationships",
    "ProgressCallback",
    "ProgressReporter",
    "QuotaExceededError",
    "RepoSync",
    "RepoSyncError",
    "RepoTransportPort",
    "RetryPolicy",
    "RevisionState",
    "RichProgressReporter",
    "SequentialTaskRunner",
    "SharedSubResource",
    "SyncDecision",
    "SyncOutcome",
    "SyncSettings",
    "TaskRunnerPort",
    "TransportError",
    "__version__",
    "decode",
    "detect_clusters",
    "find_project_root",
    "graph_operations",
    "load_settings",
    "merge",
]
