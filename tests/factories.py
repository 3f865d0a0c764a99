"""Test factories: real CAR archives, record payloads and port fakes."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import cbor2

from reposync.core.exceptions import HttpStatusError, IncrementalUnsupportedError
from reposync.core.models import (
    BLOCK_COLLECTION,
    FOLLOW_COLLECTION,
    LIST_COLLECTION,
    LISTBLOCK_COLLECTION,
    LISTITEM_COLLECTION,
    LatestCommit,
)
from reposync.core.ports import ProgressReporter


BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def make_cid(block: bytes) -> bytes:
    """CIDv1, dag-cbor codec, sha2-256 digest of block."""
    return bytes([0x01, 0x71, 0x12, 0x20]) + hashlib.sha256(block).digest()


def link(cid: bytes) -> cbor2.CBORTag:
    """DAG-CBOR link to a CID."""
    return cbor2.CBORTag(42, b"\x00" + cid)


def frame_car(root: bytes, blocks: list[tuple[bytes, bytes]]) -> bytes:
    """Frame blocks into CAR v1 bytes under a single root."""
    header = cbor2.dumps({"roots": [link(root)], "version": 1})
    out = bytearray(_varint(len(header)) + header)
    for cid, raw in blocks:
        out += _varint(len(cid) + len(raw)) + cid + raw
    return bytes(out)


def build_car(
    records: dict[str, dict[str, Any] | bytes | None],
    rev: str = "3kaaaaaaaaa22",
    did: str = "did:plc:owner",
) -> bytes:
    """Build a single-node repository archive.

    Args:
        records: Payloads by "collection/rkey" key. A dict is DAG-CBOR
            encoded, bytes are stored as is (b"" is an empty block) and
            None leaves the record block out of the archive.
        rev: Revision stored in the commit.
        did: DID stored in the commit.
    """
    blocks: list[tuple[bytes, bytes]] = []
    tree_entries = []
    previous = b""
    for key in sorted(records):
        value = records[key]
        raw = cbor2.dumps(value) if isinstance(value, dict) else value
        cid = make_cid(raw if raw is not None else b"missing:" + key.encode())
        if raw is not None:
            blocks.append((cid, raw))

        encoded = key.encode()
        prefix = 0
        while (
            prefix < min(len(previous), len(encoded))
            and previous[prefix] == encoded[prefix]
        ):
            prefix += 1
        tree_entries.append({"p": prefix, "k": encoded[prefix:], "v": link(cid), "t": None})
        previous = encoded

    node = cbor2.dumps({"l": None, "e": tree_entries})
    node_cid = make_cid(node)
    blocks.append((node_cid, node))

    commit = cbor2.dumps(
        {
            "did": did,
            "version": 3,
            "data": link(node_cid),
            "rev": rev,
            "prev": None,
            "sig": b"\x00" * 64,
        }
    )
    commit_cid = make_cid(commit)
    blocks.insert(0, (commit_cid, commit))
    return frame_car(commit_cid, blocks)


def car_with_tree(
    root_node: Any,
    extra_blocks: list[tuple[bytes, bytes]] | None = None,
    rev: str = "3kaaaaaaaaa22",
) -> bytes:
    """Build an archive whose commit points at an arbitrary tree node value."""
    node = cbor2.dumps(root_node)
    node_cid = make_cid(node)
    commit = cbor2.dumps({"did": "did:plc:owner", "version": 3, "data": link(node_cid), "rev": rev})
    commit_cid = make_cid(commit)
    blocks = [(commit_cid, commit), (node_cid, node), *(extra_blocks or [])]
    return frame_car(commit_cid, blocks)


def created(offset_seconds: float = 0) -> str:
    """ISO timestamp offset from a fixed base time."""
    moment = BASE_TIME + timedelta(seconds=offset_seconds)
    return moment.isoformat().replace("+00:00", "Z")


def block_payload(subject: str, offset_seconds: float = 0) -> dict[str, Any]:
    return {
        "$type": BLOCK_COLLECTION,
        "subject": subject,
        "createdAt": created(offset_seconds),
    }


def follow_payload(subject: str, offset_seconds: float = 0) -> dict[str, Any]:
    return {
        "$type": FOLLOW_COLLECTION,
        "subject": subject,
        "createdAt": created(offset_seconds),
    }


def list_payload(
    name: str, purpose: str = "app.bsky.graph.defs#modlist"
) -> dict[str, Any]:
    return {
        "$type": LIST_COLLECTION,
        "name": name,
        "purpose": purpose,
        "createdAt": created(),
    }


def listitem_payload(
    subject: str, list_uri: str, offset_seconds: float = 0
) -> dict[str, Any]:
    return {
        "$type": LISTITEM_COLLECTION,
        "subject": subject,
        "list": list_uri,
        "createdAt": created(offset_seconds),
    }


def listblock_payload(list_uri: str) -> dict[str, Any]:
    return {"$type": LISTBLOCK_COLLECTION, "subject": list_uri, "createdAt": created()}


# Fakes


class FakeTransport:
    """In-memory RepoTransportPort with call recording.

    Attributes:
        full: Full archives by DID.
        diffs: Diff archives by (DID, since).
        latest: Remote heads by DID; missing DIDs are unreachable.
        errors: Errors to raise by (DID, since).
        downloads: Recorded (did, endpoint, since) download calls.
        latest_calls: Recorded DIDs of head checks.
    """

    def __init__(self) -> None:
        self.full: dict[str, bytes] = {}
        self.diffs: dict[tuple[str, str], bytes] = {}
        self.latest: dict[str, LatestCommit] = {}
        self.errors: dict[tuple[str, str | None], Exception] = {}
        self.downloads: list[tuple[str, str | None, str | None]] = []
        self.latest_calls: list[str] = []
        self.closed = False

    async def download(
        self,
        did: str,
        endpoint: str | None = None,
        since: str | None = None,
        *,
        deadline_ms: int | None = None,
        progress: ProgressReporter | None = None,
    ) -> bytes:
        self.downloads.append((did, endpoint, since))
        if (did, since) in self.errors:
            raise self.errors[(did, since)]
        if since is not None:
            if (did, since) not in self.diffs:
                raise IncrementalUnsupportedError("since rejected", "https://fake")
            return self.diffs[(did, since)]
        if did not in self.full:
            raise HttpStatusError("not found", "https://fake", 404)
        return self.full[did]

    async def get_latest_commit(
        self, did: str, endpoint: str | None = None
    ) -> LatestCommit | None:
        self.latest_calls.append(did)
        return self.latest.get(did)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Clock returning a settable time in Unix milliseconds."""

    def __init__(self, now: int = 1_717_243_200_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingProgress:
    """ProgressReporter collecting every call."""

    def __init__(self) -> None:
        self.stages: list[tuple[str, str]] = []
        self.updates: list[tuple[int, int]] = []
        self.finished: list[str] = []

    def stage(self, name: str, message: str) -> None:
        self.stages.append((name, message))

    def start_task(self, name: str, total: int) -> Callable[[int, int], None]:
        return lambda downloaded, total: self.updates.append((downloaded, total))

    def finish_task(self, name: str) -> None:
        self.finished.append(name)


