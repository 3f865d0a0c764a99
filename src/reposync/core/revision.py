"""Revision tracking: deciding whether and how an identity must be synced."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from reposync.core.exceptions import TransportError
from reposync.core.models import CacheEntry, LatestCommit, SyncDecision


if TYPE_CHECKING:
    from reposync.core.ports import RepoTransportPort


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SyncPlan:
    """A sync decision plus the remote head it was based on.

    Attributes:
        decision: What the sync will do.
        latest: Remote head, or None if it was not checked or unreachable.
    """

    decision: SyncDecision
    latest: LatestCommit | None = None


def is_fresh(cached: CacheEntry | None, now_ms: int, freshness_window_ms: int) -> bool:
    """Whether a cached entry was checked within the freshness window."""
    if cached is None:
        return False
    return now_ms - cached.revision.downloaded_at_ms <= freshness_window_ms


def decide(cached: CacheEntry | None, latest: LatestCommit | None) -> SyncDecision:
    """Pick a sync decision for a stale or missing cache entry.

    Evaluated in order: unreachable remote means FULL; an unchanged
    revision only refreshes the timestamp; a changed revision is synced
    incrementally when a previous revision and state exist; anything
    else is FULL. Revisions are opaque and only compared for equality.
    """
    if latest is None or cached is None:
        return SyncDecision.FULL
    previous_rev = cached.revision.revision or cached.state.repo_rev
    if previous_rev and latest.rev == previous_rev:
        return SyncDecision.REFRESH_TIMESTAMP_ONLY
    if previous_rev:
        return SyncDecision.INCREMENTAL
    return SyncDecision.FULL


class RevisionTracker:
    """Plans syncs by comparing the cached revision with the remote head.

    Example:
        >>> tracker = RevisionTracker(transport, clock)
        >>> plan = await tracker.plan_sync("did:plc:abc", cached, 86_400_000)
        >>> plan.decision
        <SyncDecision.SKIP: 'skip'>
    """

    def __init__(self, transport: RepoTransportPort, clock: Callable[[], int]) -> None:
        """Initialize the tracker.

        Args:
            transport: Used for the lightweight head check.
            clock: Returns the current time in Unix milliseconds.
        """
        self._transport = transport
        self._clock = clock

    async def get_latest_revision(
        self, did: str, endpoint: str | None = None
    ) -> LatestCommit | None:
        """Get the remote head, or None if no endpoint answered."""
        try:
            return await self._transport.get_latest_commit(did, endpoint)
        except TransportError as e:
            logger.info("Revision check for %s failed: %s", did, e)
            return None

    async def plan_sync(
        self,
        did: str,
        cached: CacheEntry | None,
        freshness_window_ms: int,
        endpoint: str | None = None,
    ) -> SyncPlan:
        """Decide what a sync of did should do.

        A fresh cache entry short-circuits to SKIP without any network call.

        Args:
            did: Identity to plan for.
            cached: Current cache entry, if any.
            freshness_window_ms: Age below which the cache is served as is.
            endpoint: Optional primary host.

        Returns:
            The plan, carrying the remote head when one was fetched.
        """
        if is_fresh(cached, self._clock(), freshness_window_ms):
            return SyncPlan(SyncDecision.SKIP)
        latest = await self.get_latest_revision(did, endpoint)
        decision = decide(cached, latest)
        logger.debug("Planned %s for %s", decision.value, did)
        return SyncPlan(decision, latest)
