"""Core domain services for reposync."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path

from reposync.config import SyncSettings
from reposync.core import lookup
from reposync.core.cache_store import BoundedCacheStore
from reposync.core.clustering import detect_clusters
from reposync.core.decoder import collect_lists, decode, derive_state, graph_operations
from reposync.core.exceptions import (
    ArchiveFormatError,
    RepoSyncError,
    TransportError,
)
from reposync.core.locks import IdentityLocks
from reposync.core.merge import merge
from reposync.core.models import (
    BatchReport,
    BlockRelationshipStats,
    CacheEntry,
    CachedDerivedState,
    DecodeResult,
    Identity,
    MassOperationScan,
    ProfileRelationships,
    RevisionState,
    SharedSubResource,
    SyncDecision,
    SyncOutcome,
    did_from_uri,
)
from reposync.core.ports import (
    NullProgressReporter,
    ProgressReporter,
    RepoTransportPort,
    TaskRunnerPort,
)
from reposync.core.revision import RevisionTracker


logger = logging.getLogger(__name__)


def system_clock() -> int:
    """Current time in Unix milliseconds."""
    return int(time.time() * 1000)


def _identity(value: Identity | str) -> Identity:
    return value if isinstance(value, Identity) else Identity(did=value)


class RepoSync:
    """Orchestrates repository syncs with revision checks and a bounded cache.

    Each identity's read-decide-merge-write sequence runs under that
    identity's lock; cross-identity maintenance (prune, sweep, clear)
    holds every identity at once.
    """

    def __init__(
        self,
        transport: RepoTransportPort,
        cache: BoundedCacheStore,
        settings: SyncSettings | None = None,
        runner: TaskRunnerPort | None = None,
        clock: Callable[[], int] = system_clock,
    ) -> None:
        from reposync.adapters.runner import BoundedTaskRunner

        self._transport = transport
        self._cache = cache
        self.settings = settings or SyncSettings()
        self._runner = runner or BoundedTaskRunner(self.settings.max_concurrent_downloads)
        self._clock = clock
        self._locks = IdentityLocks()
        self._tracker = RevisionTracker(transport, clock)

    @classmethod
    def from_directory(
        cls,
        directory: Path | None = None,
        store_dir: Path | str = ".reposync",
    ) -> RepoSync:
        """Create RepoSync with auto-discovered project root and default adapters.

        Args:
            directory: Start directory for root discovery (defaults to cwd).
            store_dir: Cache directory relative to project root or absolute path.

        Returns:
            RepoSync over an HTTP transport and a JSON-file store.
        """
        from reposync.adapters.runner import BoundedTaskRunner
        from reposync.adapters.store import JsonFileStore
        from reposync.adapters.transport import HttpRepoTransport
        from reposync.config import find_project_root, load_settings
        from reposync.core.retry import RetryPolicy

        root = find_project_root(directory)
        settings = load_settings(root)

        resolved_store_dir = Path(store_dir)
        if not resolved_store_dir.is_absolute():
            resolved_store_dir = root / resolved_store_dir

        transport = HttpRepoTransport(
            settings.fallback_endpoint,
            deadline_ms=settings.download_timeout_ms,
            retry=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_ms / 1000,
            ),
        )
        return cls(
            transport=transport,
            cache=BoundedCacheStore(
                JsonFileStore(resolved_store_dir), settings.cache_size_ceiling_bytes
            ),
            settings=settings,
            runner=BoundedTaskRunner(settings.max_concurrent_downloads),
        )

    @property
    def cache(self) -> BoundedCacheStore:
        """The cache store backing this service."""
        return self._cache

    async def sync(
        self,
        identity: Identity | str,
        progress: ProgressReporter | None = None,
    ) -> SyncOutcome:
        """Bring the cached state of one identity up to date.

        A fresh cache entry is served without any network call. An
        incremental sync that fails is retried as a full sync within this
        call, and the outcome records the fallback.

        Args:
            identity: The identity (or bare DID) to sync.
            progress: Optional progress reporter.

        Returns:
            The outcome with the decision executed and the resulting state.

        Raises:
            TransportError: If the full download failed on every endpoint.
            ArchiveFormatError: If the downloaded archive is unreadable.
            CacheWriteError: If the state could not be stored.
        """
        identity = _identity(identity)
        reporter = progress or NullProgressReporter()
        async with self._locks.hold(identity.did):
            return await self._sync_locked(identity, reporter)

    async def _sync_locked(
        self, identity: Identity, progress: ProgressReporter
    ) -> SyncOutcome:
        did = identity.did
        cached = await self._cache.read(did)

        progress.stage(did, "Checking for updates...")
        plan = await self._tracker.plan_sync(
            did, cached, self.settings.freshness_window_ms, identity.endpoint
        )
        logger.info("Sync of %s: %s", did, plan.decision.value)

        if plan.decision is SyncDecision.SKIP:
            assert cached is not None
            return SyncOutcome(did, SyncDecision.SKIP, cached.state)

        now = self._clock()
        if plan.decision is SyncDecision.REFRESH_TIMESTAMP_ONLY:
            assert cached is not None
            state = cached.state.touched(now)
            revision = replace(cached.revision, downloaded_at_ms=now)
            await self._cache.write(did, state, revision)
            return SyncOutcome(did, SyncDecision.REFRESH_TIMESTAMP_ONLY, state)

        latest_rev = plan.latest.rev if plan.latest else ""
        if plan.decision is SyncDecision.INCREMENTAL:
            assert cached is not None
            try:
                return await self._incremental(identity, cached, latest_rev, progress)
            except (TransportError, ArchiveFormatError) as e:
                logger.info("Incremental sync of %s failed (%s); syncing in full", did, e)
                outcome = await self._full(identity, cached, latest_rev, progress)
                return replace(outcome, fell_back_to_full=True)

        return await self._full(identity, cached, latest_rev, progress)

    async def _download(
        self,
        identity: Identity,
        progress: ProgressReporter,
        since: str | None = None,
        list_filter: Iterable[str] | None = None,
    ) -> DecodeResult:
        data = await self._transport.download(
            identity.did,
            identity.endpoint,
            since,
            deadline_ms=self.settings.download_timeout_ms,
            progress=progress,
        )
        progress.stage(identity.did, "Parsing repository...")
        return decode(
            data, identity.did, None if list_filter is None else frozenset(list_filter)
        )

    async def _incremental(
        self,
        identity: Identity,
        cached: CacheEntry,
        latest_rev: str,
        progress: ProgressReporter,
    ) -> SyncOutcome:
        did = identity.did
        since = cached.revision.revision or cached.state.repo_rev
        result = await self._download(identity, progress, since=since)

        progress.stage(did, "Merging changes...")
        now = self._clock()
        previous = cached.state
        if identity.handle:
            previous = replace(previous, handle=identity.handle)
        state = merge(previous, result.records, rev=latest_rev or result.rev, now_ms=now)

        counts = dict(cached.revision.collection_counts)
        for kind, count in result.collection_counts().items():
            counts[kind] = counts.get(kind, 0) + count
        revision = RevisionState(
            identity=did,
            revision=state.repo_rev,
            downloaded_at_ms=now,
            size_bytes=result.size_bytes,
            collection_counts=counts,
        )
        progress.stage(did, "Saving...")
        await self._cache.write(did, state, revision)
        return SyncOutcome(
            did, SyncDecision.INCREMENTAL, state, skipped_entries=result.skipped
        )

    async def _full(
        self,
        identity: Identity,
        cached: CacheEntry | None,
        latest_rev: str,
        progress: ProgressReporter,
    ) -> SyncOutcome:
        did = identity.did
        result = await self._download(identity, progress)

        now = self._clock()
        handle = identity.handle or (cached.state.handle if cached else "")
        state = derive_state(
            did, result.records, handle=handle, rev=latest_rev or result.rev, now_ms=now
        )
        revision = RevisionState(
            identity=did,
            revision=state.repo_rev,
            downloaded_at_ms=now,
            size_bytes=result.size_bytes,
            collection_counts=result.collection_counts(),
        )
        progress.stage(did, "Saving...")
        await self._cache.write(did, state, revision)
        return SyncOutcome(did, SyncDecision.FULL, state, skipped_entries=result.skipped)

    async def sync_many(
        self,
        identities: Iterable[Identity | str],
        progress: ProgressReporter | None = None,
    ) -> BatchReport:
        """Sync many identities concurrently, collecting every outcome.

        Concurrency is capped by the task runner. A failure of one identity
        is recorded in its outcome and never aborts the others.

        Args:
            identities: Identities (or bare DIDs) to sync.
            progress: Optional progress reporter shared by all syncs.

        Returns:
            BatchReport with one outcome per identity, in input order.
        """

        async def sync_one(identity: Identity) -> SyncOutcome:
            try:
                return await self.sync(identity, progress)
            except RepoSyncError as e:
                logger.warning("Sync of %s failed: %s", identity.did, e)
                return SyncOutcome(identity.did, None, error=e)

        resolved = [_identity(i) for i in identities]
        outcomes = await asyncio.gather(
            *(self._runner.run(sync_one, identity) for identity in resolved)
        )
        return BatchReport(tuple(outcomes))

    async def resolve_subscribed_lists(
        self,
        identity: Identity | str,
        progress: ProgressReporter | None = None,
    ) -> list[SharedSubResource]:
        """Fetch the members of every list an identity subscribes to.

        Lists are grouped by creator so each creator's repository is
        downloaded once, decoded with only those lists kept. A creator
        whose repository cannot be fetched is logged and skipped.

        Args:
            identity: Identity whose cached subscriptions are resolved.
            progress: Optional progress reporter.

        Returns:
            The shared lists stored, sorted by URI.
        """
        identity = _identity(identity)
        reporter = progress or NullProgressReporter()
        entry = await self._cache.read(identity.did)
        if entry is None or not entry.state.subscribed_lists:
            return []

        by_creator: dict[str, set[str]] = defaultdict(set)
        for uri in entry.state.subscribed_lists:
            creator = did_from_uri(uri)
            if creator:
                by_creator[creator].add(uri)

        async def resolve(creator: str, uris: set[str]) -> list[SharedSubResource]:
            try:
                result = await self._download(Identity(creator), reporter, list_filter=uris)
            except (TransportError, ArchiveFormatError) as e:
                logger.warning("Cannot resolve lists of %s: %s", creator, e)
                return []
            now = self._clock()
            found = collect_lists(result.records, now)
            # Lists deleted by their creator resolve to no members
            resources = [
                found.get(uri)
                or SharedSubResource(
                    uri=uri, members=frozenset(), last_sync_ms=now, creator_did=creator
                )
                for uri in sorted(uris)
            ]
            for resource in resources:
                await self._cache.put_shared(resource)
            return resources

        batches = await asyncio.gather(
            *(self._runner.run(resolve, c, u) for c, u in sorted(by_creator.items()))
        )
        return sorted((r for batch in batches for r in batch), key=lambda r: r.uri)

    async def scan_mass_operations(
        self,
        identity: Identity | str,
        window_minutes: int | None = None,
        min_count: int | None = None,
        progress: ProgressReporter | None = None,
    ) -> MassOperationScan:
        """Download a repository and detect bursts of graph operations.

        Args:
            identity: Identity to scan.
            window_minutes: Window length; defaults to the settings.
            min_count: Cluster threshold; defaults to the settings.
            progress: Optional progress reporter.

        Returns:
            Clusters found (most recent first) and operation counts per type.
        """
        identity = _identity(identity)
        reporter = progress or NullProgressReporter()
        result = await self._download(identity, reporter)

        reporter.stage(identity.did, "Detecting mass operations...")
        operations = graph_operations(result.records)
        clusters = detect_clusters(
            operations,
            window_minutes or self.settings.time_window_minutes,
            min_count or self.settings.min_operation_count,
        )
        return MassOperationScan(
            identity=identity.did,
            clusters=tuple(clusters),
            operation_counts={t: len(ops) for t, ops in operations.items()},
        )

    async def _relationship_data(
        self, include_lists: bool
    ) -> tuple[list[CachedDerivedState], dict[str, SharedSubResource] | None]:
        states = [entry.state for entry in await self._cache.identities()]
        lists = await self._cache.shared_lists() if include_lists else None
        return states, lists

    async def effective_blocks(self, did: str) -> frozenset[str]:
        """DIDs a cached identity blocks, directly or through its lists.

        Returns an empty set for an identity that has not been synced.
        """
        entry = await self._cache.read(did)
        if entry is None:
            return frozenset()
        return lookup.effective_blocks(entry.state, await self._cache.shared_lists())

    async def blockers_of(
        self, subject_did: str, include_lists: bool = True
    ) -> list[CachedDerivedState]:
        """Cached identities that block a subject.

        Args:
            subject_did: DID of the blocked profile.
            include_lists: Count blocks through subscribed lists as well as
                direct blocks.
        """
        states, lists = await self._relationship_data(include_lists)
        return lookup.blockers_of(subject_did, states, lists)

    async def common_blockers(
        self, subject_dids: list[str], include_lists: bool = True
    ) -> list[CachedDerivedState]:
        """Cached identities that block every one of the subjects."""
        states, lists = await self._relationship_data(include_lists)
        return lookup.common_blockers(subject_dids, states, lists)

    async def relationships(
        self, profile_did: str, include_lists: bool = True
    ) -> ProfileRelationships:
        """Who in the cache blocks a profile, and whom the profile blocks."""
        states, lists = await self._relationship_data(include_lists)
        return lookup.relationships(profile_did, states, lists)

    async def search_identities(self, query: str) -> list[CachedDerivedState]:
        """Cached identities whose handle or DID contains the query."""
        states, _ = await self._relationship_data(include_lists=False)
        return lookup.search(query, states)

    async def block_stats(self) -> BlockRelationshipStats:
        """Aggregate block counts over the cache."""
        states, lists = await self._relationship_data(include_lists=True)
        return lookup.block_stats(states, lists or {})

    async def remove(self, did: str) -> bool:
        """Remove one identity from the cache."""
        async with self._locks.hold(did):
            return await self._cache.remove(did)

    async def prune(self, max_bytes: int | None = None) -> int:
        """Prune the cache to max_bytes (defaults to the ceiling)."""
        async with self._locks.hold_all():
            return await self._cache.prune(
                self.settings.cache_size_ceiling_bytes if max_bytes is None else max_bytes
            )

    async def sweep(self) -> int:
        """Remove shared lists no identity subscribes to."""
        async with self._locks.hold_all():
            return await self._cache.sweep_orphans()

    async def clear(self) -> None:
        """Remove everything from the cache."""
        async with self._locks.hold_all():
            await self._cache.clear()

    async def close(self) -> None:
        """Release the transport's network resources."""
        await self._transport.close()

    async def __aenter__(self) -> RepoSync:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
