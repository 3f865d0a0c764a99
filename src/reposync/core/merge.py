"""Incremental merge of decoded records into cached derived state.

Merging only ever adds. A deletion arrives in a diff as an entry with an
empty payload, which carries no subject; it cannot be attributed to any
DID and is left for the next full sync to reconcile.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace

from reposync.core.models import (
    BlockRecord,
    CachedDerivedState,
    DomainRecord,
    FollowRecord,
    ListBlockRecord,
    ListItemRecord,
)


def merge(
    previous: CachedDerivedState,
    records: Iterable[DomainRecord],
    *,
    rev: str,
    now_ms: int,
) -> CachedDerivedState:
    """Merge decoded records into previous state.

    Args:
        previous: State before this sync.
        records: Records from a decode (full or incremental).
        rev: Repository revision the merged state reflects.
        now_ms: New last-sync timestamp.

    Returns:
        A new state containing everything in previous plus the additions.
    """
    blocks = set(previous.direct_blocks)
    follows = set(previous.follows)
    subscriptions = set(previous.subscribed_lists)
    members = {uri: set(dids) for uri, dids in previous.list_members.items()}

    for record in records:
        if isinstance(record, BlockRecord):
            blocks.add(record.subject_did)
        elif isinstance(record, FollowRecord):
            follows.add(record.subject_did)
        elif isinstance(record, ListItemRecord):
            members.setdefault(record.list_uri, set()).add(record.subject_did)
        elif isinstance(record, ListBlockRecord):
            subscriptions.add(record.subject_uri)

    return replace(
        previous,
        direct_blocks=frozenset(blocks),
        follows=frozenset(follows),
        subscribed_lists=frozenset(subscriptions),
        list_members={uri: frozenset(dids) for uri, dids in members.items()},
        last_sync_ms=now_ms,
        repo_rev=rev or previous.repo_rev,
    )
