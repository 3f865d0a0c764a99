"""Detection of mass operations: bursts of same-type graph operations."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence

from reposync.core.models import GraphOperation, MassOperationCluster, OperationType


MINUTE_MS = 60_000


def detect_clusters(
    operations_by_type: Mapping[OperationType, Sequence[GraphOperation]],
    window_minutes: int,
    min_count: int,
) -> list[MassOperationCluster]:
    """Find non-overlapping bursts of operations per type.

    For each type, operations are sorted by time and swept greedily: the
    earliest unclaimed operation opens a window [t, t + window] (inclusive)
    and every unclaimed operation inside it is collected. If at least
    min_count were collected they form a cluster and are claimed, so they
    never join a later window.

    Args:
        operations_by_type: Operations grouped by type.
        window_minutes: Window length in minutes.
        min_count: Minimum operations for a window to count as a cluster.

    Returns:
        Clusters from all types, most recent start time first.

    Example:
        >>> clusters = detect_clusters({"block": ops}, window_minutes=5, min_count=10)
        >>> [c.count for c in clusters]
        [15]
    """
    window_ms = window_minutes * MINUTE_MS
    clusters: list[MassOperationCluster] = []

    for op_type, operations in operations_by_type.items():
        ordered = sorted(operations, key=lambda op: op.created_at_ms)
        claimed = [False] * len(ordered)

        for i, first in enumerate(ordered):
            if claimed[i]:
                continue
            window_end = first.created_at_ms + window_ms
            members: list[int] = []
            for j in range(i, len(ordered)):
                if ordered[j].created_at_ms > window_end:
                    break
                if not claimed[j]:
                    members.append(j)

            if len(members) < min_count:
                continue
            for j in members:
                claimed[j] = True
            cluster_ops = tuple(ordered[j] for j in members)
            clusters.append(
                MassOperationCluster(
                    id=f"cluster-{uuid.uuid4().hex}",
                    type=op_type,
                    operations=cluster_ops,
                    start_time_ms=cluster_ops[0].created_at_ms,
                    end_time_ms=cluster_ops[-1].created_at_ms,
                )
            )

    clusters.sort(key=lambda c: c.start_time_ms, reverse=True)
    return clusters
