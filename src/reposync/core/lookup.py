"""Block relationship queries over cached derived state.

Everything here is computed from the cache alone. An identity's effective
blocks are its direct blocks plus the members of the shared lists it
subscribes to; a subscribed list that was never resolved contributes no
members.

Example:
    >>> states = [entry.state for entry in await cache.identities()]
    >>> blockers_of("did:plc:target", states, await cache.shared_lists())
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from reposync.core.models import (
    BlockRelationshipStats,
    CachedDerivedState,
    ProfileRelationships,
    SharedSubResource,
)


def effective_blocks(
    state: CachedDerivedState,
    lists: Mapping[str, SharedSubResource] | None = None,
) -> frozenset[str]:
    """DIDs an identity blocks, directly or through subscribed lists.

    Args:
        state: Cached state of the blocking identity.
        lists: Resolved shared lists by URI. When None, only direct blocks
            are returned.
    """
    if not lists or not state.subscribed_lists:
        return state.direct_blocks
    blocked = set(state.direct_blocks)
    for uri in state.subscribed_lists:
        resource = lists.get(uri)
        if resource is not None:
            blocked.update(resource.members)
    return frozenset(blocked)


def _by_handle(states: Iterable[CachedDerivedState]) -> list[CachedDerivedState]:
    return sorted(states, key=lambda s: (s.handle or s.identity, s.identity))


def blockers_of(
    subject: str,
    states: Iterable[CachedDerivedState],
    lists: Mapping[str, SharedSubResource] | None = None,
) -> list[CachedDerivedState]:
    """Cached identities other than the subject that block it, ordered by handle."""
    return _by_handle(
        s for s in states if s.identity != subject and subject in effective_blocks(s, lists)
    )


def common_blockers(
    subjects: Sequence[str],
    states: Iterable[CachedDerivedState],
    lists: Mapping[str, SharedSubResource] | None = None,
) -> list[CachedDerivedState]:
    """Cached identities that block every one of the subjects.

    An empty subject list matches nobody.
    """
    if not subjects:
        return []
    matches = []
    for state in states:
        blocked = effective_blocks(state, lists)
        if all(subject in blocked for subject in subjects):
            matches.append(state)
    return _by_handle(matches)


def relationships(
    profile: str,
    states: Iterable[CachedDerivedState],
    lists: Mapping[str, SharedSubResource] | None = None,
) -> ProfileRelationships:
    """Both directions of blocking between a profile and the cache.

    ``blocking`` is filled only when the profile itself has been synced.
    """
    states = list(states)
    blocking: tuple[CachedDerivedState, ...] = ()
    own = next((s for s in states if s.identity == profile), None)
    if own is not None:
        blocked = effective_blocks(own, lists)
        blocking = tuple(
            _by_handle(s for s in states if s.identity in blocked and s.identity != profile)
        )
    return ProfileRelationships(
        profile=profile,
        blocked_by=tuple(blockers_of(profile, states, lists)),
        blocking=blocking,
    )


def search(query: str, states: Iterable[CachedDerivedState]) -> list[CachedDerivedState]:
    """Identities whose handle or DID contains the query, case-insensitively.

    Results are ordered by direct block count, largest first.
    """
    needle = query.strip().lower()
    if not needle:
        return []
    matches = [s for s in states if needle in s.handle.lower() or needle in s.identity.lower()]
    matches.sort(key=lambda s: (-len(s.direct_blocks), s.identity))
    return matches


def block_stats(
    states: Iterable[CachedDerivedState],
    lists: Mapping[str, SharedSubResource],
) -> BlockRelationshipStats:
    """Aggregate counts over the cached identities and shared lists."""
    states = list(states)
    total_blocks = sum(len(s.direct_blocks) for s in states)
    average = int(total_blocks / len(states) + 0.5) if states else 0
    return BlockRelationshipStats(
        synced_identities=len(states),
        total_direct_blocks=total_blocks,
        total_list_subscriptions=sum(len(s.subscribed_lists) for s in states),
        unique_shared_lists=len(lists),
        average_direct_blocks=average,
        last_sync_ms=max((s.last_sync_ms for s in states), default=0),
    )
