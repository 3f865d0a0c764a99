"""Core domain module for reposync.

This module contains pure Python domain models, port definitions and the
decoding, merging, caching and detection logic. Network and storage
access happen only through the ports.
"""

from reposync.core.models import (
    CachedDerivedState,
    DecodeResult,
    DomainRecord,
    GraphOperation,
    RepositoryEntry,
)
from reposync.core.ports import (
    KeyValueStorePort,
    ProgressCallback,
    RepoTransportPort,
    TaskRunnerPort,
)


__all__ = [
    "CachedDerivedState",
    "DecodeResult",
    "DomainRecord",
    "GraphOperation",
    "KeyValueStorePort",
    "ProgressCallback",
    "RepoTransportPort",
    "RepositoryEntry",
    "TaskRunnerPort",
]
