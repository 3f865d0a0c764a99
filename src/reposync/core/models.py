"""Core domain models for reposync.

These models are pure Python dataclasses with no I/O dependencies.
They represent the records of an account repository, the derived state
cached per identity, and the results of sync and detection runs.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Self


POST_COLLECTION = "app.bsky.feed.post"
BLOCK_COLLECTION = "app.bsky.graph.block"
FOLLOW_COLLECTION = "app.bsky.graph.follow"
LIST_COLLECTION = "app.bsky.graph.list"
LISTITEM_COLLECTION = "app.bsky.graph.listitem"
LISTBLOCK_COLLECTION = "app.bsky.graph.listblock"

OperationType = Literal["block", "follow", "listitem"]
OPERATION_TYPES: tuple[OperationType, ...] = ("block", "follow", "listitem")

UNKNOWN_LIST_NAME = "Unknown List"


def at_uri(did: str, collection: str, record_key: str) -> str:
    """Build the canonical at:// URI of a record."""
    return f"at://{did}/{collection}/{record_key}"


def did_from_uri(uri: str) -> str | None:
    """Extract the authority DID from an at:// URI, or None if not one."""
    if not uri.startswith("at://"):
        return None
    authority = uri[5:].split("/", 1)[0]
    return authority or None


def to_millis(value: datetime) -> int:
    """Convert an aware datetime to Unix milliseconds."""
    return int(value.timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class RepositoryEntry:
    """A single record slot enumerated from a repository archive.

    Attributes:
        collection: Collection NSID (e.g., "app.bsky.graph.block").
        record_key: Record key within the collection.
        raw: Encoded record payload. Empty for deletion tombstones.
    """

    collection: str
    record_key: str
    raw: bytes

    @property
    def is_tombstone(self) -> bool:
        """Whether this entry carries no payload."""
        return len(self.raw) == 0


@dataclass(frozen=True, slots=True)
class _RecordBase:
    did: str
    collection: str
    record_key: str

    @property
    def uri(self) -> str:
        """Canonical at:// URI of this record."""
        return at_uri(self.did, self.collection, self.record_key)


@dataclass(frozen=True, slots=True)
class PostRecord(_RecordBase):
    """A post authored by the repository owner."""

    text: str
    created_at: datetime
    reply_parent: str | None = None
    reply_root: str | None = None
    embed_type: str | None = None
    embed_record: str | None = None
    kind: Literal["post"] = "post"


@dataclass(frozen=True, slots=True)
class BlockRecord(_RecordBase):
    """A block of another account."""

    subject_did: str
    created_at: datetime
    kind: Literal["block"] = "block"


@dataclass(frozen=True, slots=True)
class FollowRecord(_RecordBase):
    """A follow of another account."""

    subject_did: str
    created_at: datetime
    kind: Literal["follow"] = "follow"


@dataclass(frozen=True, slots=True)
class ListRecord(_RecordBase):
    """A curation or moderation list owned by the repository owner."""

    name: str
    purpose: str
    created_at: datetime
    description: str | None = None
    kind: Literal["list"] = "list"


@dataclass(frozen=True, slots=True)
class ListItemRecord(_RecordBase):
    """Membership of an account in a list."""

    subject_did: str
    list_uri: str
    created_at: datetime
    kind: Literal["listitem"] = "listitem"


@dataclass(frozen=True, slots=True)
class ListBlockRecord(_RecordBase):
    """Subscription to a moderation list as a blocklist."""

    subject_uri: str
    created_at: datetime
    kind: Literal["listblock"] = "listblock"


@dataclass(frozen=True, slots=True)
class UnknownRecord(_RecordBase):
    """A record from a collection the decoder does not model."""

    kind: Literal["unknown"] = "unknown"


DomainRecord = (
    PostRecord
    | BlockRecord
    | FollowRecord
    | ListRecord
    | ListItemRecord
    | ListBlockRecord
    | UnknownRecord
)


@dataclass(frozen=True, slots=True)
class DecodeResult:
    """Output of decoding one repository archive.

    Attributes:
        records: Successfully decoded records, in archive key order.
        skipped: Number of entries that failed to decode or validate.
        tombstones: Number of entries with an empty payload. In a diff
            archive this also counts unchanged records whose blocks were
            left out, so it is an upper bound on deletions.
        size_bytes: Size of the decoded archive in bytes.
        rev: Revision named by the archive's commit ("" if absent).
    """

    records: tuple[DomainRecord, ...] = ()
    skipped: int = 0
    tombstones: int = 0
    size_bytes: int = 0
    rev: str = ""

    def collection_counts(self) -> dict[str, int]:
        """Count decoded records per record kind."""
        counts: dict[str, int] = {}
        for record in self.records:
            counts[record.kind] = counts.get(record.kind, 0) + 1
        return counts


@dataclass(frozen=True, slots=True)
class GraphOperation:
    """A block, follow or list membership viewed as a timestamped operation.

    Attributes:
        type: Operation type ("block", "follow" or "listitem").
        subject_did: DID the operation targets.
        record_key: Record key of the underlying record.
        created_at_ms: Creation time in Unix milliseconds.
        list_uri: List URI for list memberships.
        list_name: Resolved list name for list memberships.
    """

    type: OperationType
    subject_did: str
    record_key: str
    created_at_ms: int
    list_uri: str | None = None
    list_name: str | None = None


@dataclass(frozen=True, slots=True)
class MassOperationCluster:
    """A burst of same-type operations inside one time window."""

    id: str
    type: OperationType
    operations: tuple[GraphOperation, ...]
    start_time_ms: int
    end_time_ms: int

    @property
    def count(self) -> int:
        """Number of operations in the cluster."""
        return len(self.operations)


@dataclass(frozen=True, slots=True)
class LatestCommit:
    """Head of a repository as reported by getLatestCommit.

    The revision is an opaque token: compare it with == only.
    """

    cid: str
    rev: str


@dataclass(frozen=True, slots=True)
class RevisionState:
    """What was downloaded for an identity, and when.

    Attributes:
        identity: DID of the repository.
        revision: Repository revision at download time ("" if unknown).
        downloaded_at_ms: When the repository was last checked or downloaded.
        size_bytes: Size of the last downloaded archive.
        collection_counts: Record counts per kind in the last download.
    """

    identity: str
    revision: str
    downloaded_at_ms: int
    size_bytes: int = 0
    collection_counts: Mapping[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON key/value store."""
        return {
            "identity": self.identity,
            "revision": self.revision,
            "downloaded_at_ms": self.downloaded_at_ms,
            "size_bytes": self.size_bytes,
            "collection_counts": dict(self.collection_counts),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """Deserialize from a JSON key/value store."""
        return cls(
            identity=data["identity"],
            revision=data.get("revision", ""),
            downloaded_at_ms=int(data["downloaded_at_ms"]),
            size_bytes=int(data.get("size_bytes", 0)),
            collection_counts=dict(data.get("collection_counts", {})),
        )


@dataclass(frozen=True, slots=True)
class CachedDerivedState:
    """Graph state derived from one identity's repository.

    Attributes:
        identity: DID of the repository owner.
        handle: Last known handle (may be empty).
        direct_blocks: DIDs blocked directly.
        subscribed_lists: URIs of moderation lists subscribed to as blocklists.
        follows: DIDs followed.
        list_members: Members of lists owned by this identity, by list URI.
        last_sync_ms: When this state was last written.
        repo_rev: Repository revision the state reflects ("" if unknown).
    """

    identity: str
    handle: str = ""
    direct_blocks: frozenset[str] = frozenset()
    subscribed_lists: frozenset[str] = frozenset()
    follows: frozenset[str] = frozenset()
    list_members: Mapping[str, frozenset[str]] = field(default_factory=dict)
    last_sync_ms: int = 0
    repo_rev: str = ""

    def touched(self, now_ms: int) -> Self:
        """Return a copy with only last_sync_ms advanced."""
        return replace(self, last_sync_ms=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON key/value store (sets become sorted lists)."""
        return {
            "identity": self.identity,
            "handle": self.handle,
            "direct_blocks": sorted(self.direct_blocks),
            "subscribed_lists": sorted(self.subscribed_lists),
            "follows": sorted(self.follows),
            "list_members": {
                uri: sorted(members) for uri, members in sorted(self.list_members.items())
            },
            "last_sync_ms": self.last_sync_ms,
            "repo_rev": self.repo_rev,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """Deserialize from a JSON key/value store."""
        return cls(
            identity=data["identity"],
            handle=data.get("handle", ""),
            direct_blocks=frozenset(data.get("direct_blocks", ())),
            subscribed_lists=frozenset(data.get("subscribed_lists", ())),
            follows=frozenset(data.get("follows", ())),
            list_members={
                uri: frozenset(members)
                for uri, members in data.get("list_members", {}).items()
            },
            last_sync_ms=int(data.get("last_sync_ms", 0)),
            repo_rev=data.get("repo_rev", ""),
        )


@dataclass(frozen=True, slots=True)
class SharedSubResource:
    """List contents shared across every identity that references the list.

    Attributes:
        uri: at:// URI of the list.
        members: DIDs on the list.
        last_sync_ms: When the contents were last resolved.
        name: List name, if known.
        creator_did: DID of the list owner.
    """

    uri: str
    members: frozenset[str]
    last_sync_ms: int
    name: str = UNKNOWN_LIST_NAME
    creator_did: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a JSON key/value store."""
        return {
            "uri": self.uri,
            "members": sorted(self.members),
            "last_sync_ms": self.last_sync_ms,
            "name": self.name,
            "creator_did": self.creator_did,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Self:
        """Deserialize from a JSON key/value store."""
        return cls(
            uri=data["uri"],
            members=frozenset(data.get("members", ())),
            last_sync_ms=int(data.get("last_sync_ms", 0)),
            name=data.get("name", UNKNOWN_LIST_NAME),
            creator_did=data.get("creator_did", ""),
        )


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Everything the cache holds for one identity."""

    state: CachedDerivedState
    revision: RevisionState


class SyncDecision(Enum):
    """What a sync attempt will do, decided before any download."""

    SKIP = "skip"
    REFRESH_TIMESTAMP_ONLY = "refresh_timestamp_only"
    INCREMENTAL = "incremental"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class Identity:
    """An account to sync.

    Attributes:
        did: The account DID.
        handle: Optional handle, stored alongside derived state.
        endpoint: Optional PDS base URL tried before the fallback host.
    """

    did: str
    handle: str = ""
    endpoint: str | None = None

    def __post_init__(self) -> None:
        """Validate the DID."""
        if not self.did:
            raise ValueError("Identity DID cannot be empty")


@dataclass(frozen=True, slots=True)
class SyncOutcome:
    """Result of syncing one identity.

    Attributes:
        identity: The DID that was synced.
        decision: The decision that was finally executed.
        state: Derived state after the sync (None on failure).
        fell_back_to_full: True when an incremental attempt degraded to full.
        skipped_entries: Malformed entries skipped while decoding.
        error: The failure, when the sync did not complete.
    """

    identity: str
    decision: SyncDecision | None
    state: CachedDerivedState | None = None
    fell_back_to_full: bool = False
    skipped_entries: int = 0
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        """Whether the sync completed."""
        return self.error is None


@dataclass(frozen=True, slots=True)
class BatchReport:
    """Per-identity outcomes of a batch sync."""

    outcomes: tuple[SyncOutcome, ...] = ()

    @property
    def succeeded(self) -> list[SyncOutcome]:
        """Outcomes that completed."""
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[SyncOutcome]:
        """Outcomes that failed."""
        return [o for o in self.outcomes if not o.ok]

    def messages(self) -> list[str]:
        """Human-readable failure messages, one per failed identity."""
        return [f"Failed to sync {o.identity}: {o.error}" for o in self.failed]


@dataclass(frozen=True, slots=True)
class MassOperationScan:
    """Result of scanning one repository for mass operations."""

    identity: str
    clusters: tuple[MassOperationCluster, ...]
    operation_counts: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class ProfileRelationships:
    """Block relationships between one profile and the cached identities.

    Attributes:
        profile: DID of the profile looked up.
        blocked_by: Cached identities that block the profile.
        blocking: Cached identities the profile blocks. Only known when the
            profile itself is cached.
    """

    profile: str
    blocked_by: tuple[CachedDerivedState, ...] = ()
    blocking: tuple[CachedDerivedState, ...] = ()


@dataclass(frozen=True, slots=True)
class BlockRelationshipStats:
    """Totals over the block relationships held in the cache."""

    synced_identities: int
    total_direct_blocks: int
    total_list_subscriptions: int
    unique_shared_lists: int
    average_direct_blocks: int
    last_sync_ms: int
