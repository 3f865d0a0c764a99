"""Repository decoder: archive bytes to typed domain records.

The archive's entries are enumerated once into a list; every later pass
(list metadata before list members, graph operations, derived state)
indexes that list or the decoded records instead of re-reading bytes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import cbor2

from reposync.core.car import CarArchive, decode_dag_cbor
from reposync.core.exceptions import ArchiveFormatError, DecodeError
from reposync.core.merge import merge
from reposync.core.models import (
    BLOCK_COLLECTION,
    FOLLOW_COLLECTION,
    LIST_COLLECTION,
    LISTBLOCK_COLLECTION,
    LISTITEM_COLLECTION,
    OPERATION_TYPES,
    POST_COLLECTION,
    UNKNOWN_LIST_NAME,
    BlockRecord,
    CachedDerivedState,
    DecodeResult,
    DomainRecord,
    FollowRecord,
    GraphOperation,
    ListBlockRecord,
    ListItemRecord,
    ListRecord,
    OperationType,
    PostRecord,
    RepositoryEntry,
    SharedSubResource,
    did_from_uri,
    to_millis,
)


logger = logging.getLogger(__name__)

_Parser = Callable[[str, RepositoryEntry, Mapping[str, Any]], DomainRecord]


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"Missing required field '{key}'")
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _nested_uri(payload: Mapping[str, Any], *path: str) -> str | None:
    node: Any = payload
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return _optional_str(node)


def parse_timestamp(value: Any) -> datetime:
    """Parse a record's createdAt into an aware datetime.

    Naive timestamps are taken as UTC.

    Raises:
        DecodeError: If the value is missing or not ISO 8601.
    """
    if not isinstance(value, str) or not value:
        raise DecodeError("Missing required field 'createdAt'")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise DecodeError(f"Invalid createdAt '{value}'", cause=e) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_post(did: str, entry: RepositoryEntry, payload: Mapping[str, Any]) -> PostRecord:
    text = payload.get("text", "")
    embed = payload.get("embed")
    return PostRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        text=text if isinstance(text, str) else "",
        created_at=parse_timestamp(payload.get("createdAt")),
        reply_parent=_nested_uri(payload, "reply", "parent", "uri"),
        reply_root=_nested_uri(payload, "reply", "root", "uri"),
        embed_type=_optional_str(embed.get("$type")) if isinstance(embed, Mapping) else None,
        embed_record=_nested_uri(payload, "embed", "record", "uri"),
    )


def _parse_block(did: str, entry: RepositoryEntry, payload: Mapping[str, Any]) -> BlockRecord:
    return BlockRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        subject_did=_required_str(payload, "subject"),
        created_at=parse_timestamp(payload.get("createdAt")),
    )


def _parse_follow(did: str, entry: RepositoryEntry, payload: Mapping[str, Any]) -> FollowRecord:
    return FollowRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        subject_did=_required_str(payload, "subject"),
        created_at=parse_timestamp(payload.get("createdAt")),
    )


def _parse_list(did: str, entry: RepositoryEntry, payload: Mapping[str, Any]) -> ListRecord:
    return ListRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        name=_required_str(payload, "name"),
        purpose=_required_str(payload, "purpose"),
        created_at=parse_timestamp(payload.get("createdAt")),
        description=_optional_str(payload.get("description")),
    )


def _parse_listitem(
    did: str, entry: RepositoryEntry, payload: Mapping[str, Any]
) -> ListItemRecord:
    return ListItemRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        subject_did=_required_str(payload, "subject"),
        list_uri=_required_str(payload, "list"),
        created_at=parse_timestamp(payload.get("createdAt")),
    )


def _parse_listblock(
    did: str, entry: RepositoryEntry, payload: Mapping[str, Any]
) -> ListBlockRecord:
    return ListBlockRecord(
        did=did,
        collection=entry.collection,
        record_key=entry.record_key,
        subject_uri=_required_str(payload, "subject"),
        created_at=parse_timestamp(payload.get("createdAt")),
    )


PARSERS: dict[str, _Parser] = {
    POST_COLLECTION: _parse_post,
    BLOCK_COLLECTION: _parse_block,
    FOLLOW_COLLECTION: _parse_follow,
    LIST_COLLECTION: _parse_list,
    LISTITEM_COLLECTION: _parse_listitem,
    LISTBLOCK_COLLECTION: _parse_listblock,
}


def decode_entry(entry: RepositoryEntry, did: str) -> DomainRecord:
    """Decode one entry of a recognized collection.

    Raises:
        DecodeError: If the payload is not valid DAG-CBOR, has the wrong
            record type or lacks a required field.
        KeyError: If the collection is not recognized.
    """
    parser = PARSERS[entry.collection]
    try:
        payload = decode_dag_cbor(entry.raw)
    except (cbor2.CBORDecodeError, ValueError) as e:
        raise DecodeError(
            f"Undecodable payload: {e}", entry.collection, entry.record_key, e
        ) from e
    if not isinstance(payload, Mapping):
        raise DecodeError("Payload is not a map", entry.collection, entry.record_key)
    record_type = payload.get("$type")
    if record_type is not None and record_type != entry.collection:
        raise DecodeError(
            f"Record type '{record_type}' does not match collection",
            entry.collection,
            entry.record_key,
        )
    try:
        return parser(did, entry, payload)
    except DecodeError as e:
        raise DecodeError(str(e), entry.collection, entry.record_key, e.cause) from e


def decode_entries(
    entries: Sequence[RepositoryEntry],
    did: str,
    list_filter: Collection[str] | None = None,
    size_bytes: int = 0,
) -> DecodeResult:
    """Decode already-enumerated entries.

    Args:
        entries: Materialized archive entries.
        did: DID of the repository owner, used to build record URIs.
        list_filter: When given, list and list-item records for lists
            outside this set of URIs are left out.
        size_bytes: Archive size to record in the result.

    Returns:
        DecodeResult with records in entry order and the skipped count.
    """
    records: list[DomainRecord] = []
    skipped = 0
    tombstones = 0
    for entry in entries:
        if entry.is_tombstone:
            tombstones += 1
            continue
        if entry.collection not in PARSERS:
            continue
        try:
            record = decode_entry(entry, did)
        except DecodeError as e:
            skipped += 1
            logger.debug(
                "Skipping malformed %s/%s: %s", e.collection, e.record_key, e
            )
            continue

        if list_filter is not None:
            if isinstance(record, ListItemRecord) and record.list_uri not in list_filter:
                continue
            if isinstance(record, ListRecord) and record.uri not in list_filter:
                continue
        records.append(record)

    if skipped:
        logger.warning("Skipped %d malformed entries in repository of %s", skipped, did)
    return DecodeResult(
        records=tuple(records),
        skipped=skipped,
        tombstones=tombstones,
        size_bytes=size_bytes,
    )


def decode(
    data: bytes, did: str, list_filter: Collection[str] | None = None
) -> DecodeResult:
    """Decode a repository archive into typed records.

    Malformed entries are counted and skipped; they never abort decoding.

    Args:
        data: CAR archive bytes.
        did: DID of the repository owner.
        list_filter: Optional allow-list of list URIs.

    Returns:
        DecodeResult with the decoded records.

    Raises:
        ArchiveFormatError: If the archive framing, root commit or tree
            structure is unreadable.

    Example:
        >>> result = decode(car_bytes, "did:plc:abc")
        >>> result.collection_counts()
        {'block': 12, 'follow': 40}
    """
    archive = CarArchive.from_bytes(data)
    rev = archive.commit().get("rev")
    try:
        entries = list(archive.entries())
    except (TypeError, ValueError, KeyError, AttributeError, RecursionError) as e:
        raise ArchiveFormatError(f"Unreadable repository tree: {e}") from e
    result = decode_entries(entries, did, list_filter, size_bytes=len(data))
    return replace(result, rev=rev if isinstance(rev, str) else "")


def graph_operations(
    records: Iterable[DomainRecord],
) -> dict[OperationType, list[GraphOperation]]:
    """Project block, follow and list-item records onto graph operations.

    List names are resolved from list records among the same records;
    memberships of lists not found there are named "Unknown List".
    """
    records = list(records)
    list_names = {r.uri: r.name for r in records if isinstance(r, ListRecord)}
    operations: dict[OperationType, list[GraphOperation]] = {t: [] for t in OPERATION_TYPES}

    for record in records:
        if isinstance(record, BlockRecord | FollowRecord):
            operations[record.kind].append(
                GraphOperation(
                    type=record.kind,
                    subject_did=record.subject_did,
                    record_key=record.record_key,
                    created_at_ms=to_millis(record.created_at),
                )
            )
        elif isinstance(record, ListItemRecord):
            operations["listitem"].append(
                GraphOperation(
                    type="listitem",
                    subject_did=record.subject_did,
                    record_key=record.record_key,
                    created_at_ms=to_millis(record.created_at),
                    list_uri=record.list_uri,
                    list_name=list_names.get(record.list_uri, UNKNOWN_LIST_NAME),
                )
            )
    return operations


def collect_lists(
    records: Iterable[DomainRecord], now_ms: int
) -> dict[str, SharedSubResource]:
    """Group list-item members under their lists.

    Lists with a list record get its name; lists known only through their
    items are named "Unknown List".

    Args:
        records: Decoded records of one repository.
        now_ms: Timestamp to stamp on each resource.

    Returns:
        Shared sub-resources keyed by list URI.
    """
    names: dict[str, str] = {}
    members: dict[str, set[str]] = {}
    for record in records:
        if isinstance(record, ListRecord):
            names[record.uri] = record.name
            members.setdefault(record.uri, set())
        elif isinstance(record, ListItemRecord):
            members.setdefault(record.list_uri, set()).add(record.subject_did)

    return {
        uri: SharedSubResource(
            uri=uri,
            members=frozenset(dids),
            last_sync_ms=now_ms,
            name=names.get(uri, UNKNOWN_LIST_NAME),
            creator_did=did_from_uri(uri) or "",
        )
        for uri, dids in members.items()
    }


def derive_state(
    did: str,
    records: Iterable[DomainRecord],
    *,
    handle: str = "",
    rev: str = "",
    now_ms: int,
) -> CachedDerivedState:
    """Build derived state from a full repository decode."""
    return merge(CachedDerivedState(identity=did, handle=handle), records, rev=rev, now_ms=now_ms)
