"""CAR v1 archive reader and repository tree walker.

A repository archive is a CAR file: a DAG-CBOR header naming the root
commit, followed by length-prefixed (CID, block) sections. The commit's
`data` link points at the root of a Merkle Search Tree whose leaves map
"collection/rkey" keys to record blocks.

Only framing and tree structure are handled here. Record payloads are
returned as raw bytes and decoded one by one by the decoder, so that a
corrupt record never prevents enumerating the others.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Self

import cbor2

from reposync.core.exceptions import ArchiveFormatError
from reposync.core.models import RepositoryEntry


logger = logging.getLogger(__name__)

# DAG-CBOR tag for CID links
_CID_TAG = 42
# CIDv0 is a bare sha2-256 multihash: 0x12 0x20 + 32 bytes
_CIDV0_PREFIX = b"\x12\x20"
_CIDV0_LENGTH = 34


@dataclass(frozen=True, slots=True)
class CidLink:
    """A CID link found inside a DAG-CBOR value.

    Attributes:
        cid: Binary CID (without the DAG-CBOR 0x00 multibase prefix).
    """

    cid: bytes


def _tag_hook(first: Any, second: Any) -> Any:
    # cbor2 5.x calls hook(decoder, tag); 6.x calls hook(tag, immutable)
    tag = first if isinstance(first, cbor2.CBORTag) else second
    if tag.tag == _CID_TAG and isinstance(tag.value, bytes):
        value = tag.value
        return CidLink(value[1:] if value[:1] == b"\x00" else value)
    return tag


def _is_link_or_none(value: Any) -> bool:
    return value is None or isinstance(value, CidLink)


def decode_dag_cbor(raw: bytes) -> Any:
    """Decode one DAG-CBOR block, turning CID links into CidLink values.

    Raises:
        cbor2.CBORDecodeError: If the bytes are not valid CBOR.
    """
    return cbor2.loads(raw, tag_hook=_tag_hook)


def read_varint(data: bytes | memoryview, offset: int) -> tuple[int, int]:
    """Read an unsigned LEB128 varint.

    Args:
        data: Buffer to read from.
        offset: Position of the first varint byte.

    Returns:
        Tuple of (value, offset just past the varint).

    Raises:
        ValueError: If the buffer ends inside the varint.
    """
    value = 0
    shift = 0
    while True:
        if offset >= len(data):
            raise ValueError("Truncated varint")
        byte = data[offset]
        offset += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset
        shift += 7
        if shift > 63:
            raise ValueError("Varint too long")


def read_cid(data: bytes | memoryview, offset: int) -> tuple[bytes, int]:
    """Read a binary CID (v0 or v1) starting at offset.

    Returns:
        Tuple of (CID bytes, offset just past the CID).

    Raises:
        ValueError: If the CID is truncated or has an unknown version.
    """
    if bytes(data[offset : offset + 2]) == _CIDV0_PREFIX:
        end = offset + _CIDV0_LENGTH
        if end > len(data):
            raise ValueError("Truncated CIDv0")
        return bytes(data[offset:end]), end

    version, pos = read_varint(data, offset)
    if version != 1:
        raise ValueError(f"Unsupported CID version {version}")
    _codec, pos = read_varint(data, pos)
    _hash_code, pos = read_varint(data, pos)
    digest_length, pos = read_varint(data, pos)
    end = pos + digest_length
    if end > len(data):
        raise ValueError("Truncated CID digest")
    return bytes(data[offset:end]), end


class CarArchive:
    """An in-memory CAR archive.

    Example:
        >>> archive = CarArchive.from_bytes(data)
        >>> for entry in archive.entries():
        ...     print(entry.collection, entry.record_key)
    """

    def __init__(self, roots: tuple[bytes, ...], blocks: dict[bytes, bytes]) -> None:
        """Initialize from parsed roots and blocks.

        Args:
            roots: Root CIDs from the header.
            blocks: Block bytes keyed by binary CID.
        """
        self.roots = roots
        self.blocks = blocks

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        """Parse the CAR framing of an archive.

        A truncated trailing section is dropped with a warning; the blocks
        read before it are kept.

        Raises:
            ArchiveFormatError: If the header is unreadable or has no roots.
        """
        view = memoryview(data)
        try:
            header_length, offset = read_varint(view, 0)
            header_end = offset + header_length
            if header_length == 0 or header_end > len(view):
                raise ValueError("Truncated header")
            header = decode_dag_cbor(bytes(view[offset:header_end]))
        except (ValueError, cbor2.CBORDecodeError) as e:
            raise ArchiveFormatError(f"Unreadable CAR header: {e}") from e

        if not isinstance(header, dict) or header.get("version") != 1:
            raise ArchiveFormatError("Not a CAR v1 archive")
        roots = tuple(
            link.cid for link in header.get("roots") or () if isinstance(link, CidLink)
        )
        if not roots:
            raise ArchiveFormatError("CAR header has no roots")

        blocks: dict[bytes, bytes] = {}
        offset = header_end
        while offset < len(view):
            try:
                section_length, body_start = read_varint(view, offset)
                section_end = body_start + section_length
                if section_end > len(view):
                    raise ValueError("Truncated section")
                cid, block_start = read_cid(view, body_start)
                if block_start > section_end:
                    raise ValueError("CID overruns section")
            except ValueError as e:
                logger.warning("Stopped reading CAR at byte %d: %s", offset, e)
                break
            blocks[cid] = bytes(view[block_start:section_end])
            offset = section_end

        return cls(roots=roots, blocks=blocks)

    @property
    def root(self) -> bytes:
        """CID of the root commit."""
        return self.roots[0]

    def commit(self) -> dict[str, Any]:
        """Decode the root commit block.

        Raises:
            ArchiveFormatError: If the commit is missing or malformed.
        """
        raw = self.blocks.get(self.root)
        if raw is None:
            raise ArchiveFormatError("Root commit block is missing from the archive")
        try:
            commit = decode_dag_cbor(raw)
        except (ValueError, cbor2.CBORDecodeError) as e:
            raise ArchiveFormatError(f"Unreadable commit block: {e}") from e
        if not isinstance(commit, dict) or not isinstance(commit.get("data"), CidLink):
            raise ArchiveFormatError("Commit block has no data link")
        return commit

    def entries(self) -> Iterator[RepositoryEntry]:
        """Walk the repository tree and yield every record entry in key order.

        Entries whose record block is absent from the archive are yielded
        with an empty payload. A diff download leaves out the blocks of
        unchanged records listed under a changed tree node, so an empty
        payload means "block not included", not necessarily "deleted".
        Tree nodes that are absent, undecodable or malformed are skipped.

        Raises:
            ArchiveFormatError: If the root commit is unusable.
        """
        data_link: CidLink = self.commit()["data"]
        yield from self._walk(data_link.cid, set())

    def _walk(self, node_cid: bytes, visited: set[bytes]) -> Iterator[RepositoryEntry]:
        if node_cid in visited:
            return
        visited.add(node_cid)

        raw = self.blocks.get(node_cid)
        if raw is None:
            return
        try:
            node = decode_dag_cbor(raw)
        except (ValueError, cbor2.CBORDecodeError) as e:
            logger.warning("Skipping undecodable tree node: %s", e)
            return
        if not isinstance(node, dict):
            logger.warning("Skipping tree node that is not a map")
            return

        left = node.get("l")
        items = node.get("e")
        if not _is_link_or_none(left) or not isinstance(items, list):
            logger.warning("Skipping tree node with malformed 'l' or 'e' fields")
            return
        if left is not None:
            yield from self._walk(left.cid, visited)

        previous_key = b""
        for item in items:
            if not isinstance(item, dict):
                continue
            prefix_length = item.get("p", 0)
            suffix = item.get("k", b"")
            if (
                not isinstance(prefix_length, int)
                or not 0 <= prefix_length <= len(previous_key)
                or not isinstance(suffix, bytes)
            ):
                logger.warning("Skipping tree entry with a malformed key")
                continue
            key = previous_key[:prefix_length] + suffix
            previous_key = key

            value = item.get("v")
            if isinstance(value, CidLink):
                entry = self._entry(key, value.cid)
                if entry is not None:
                    yield entry

            subtree = item.get("t")
            if not _is_link_or_none(subtree):
                logger.warning("Skipping malformed subtree link under %r", key)
            elif subtree is not None:
                yield from self._walk(subtree.cid, visited)

    def _entry(self, key: bytes, record_cid: bytes) -> RepositoryEntry | None:
        try:
            path = key.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping tree key that is not UTF-8")
            return None
        collection, _, record_key = path.partition("/")
        if not collection or not record_key:
            return None
        return RepositoryEntry(
            collection=collection,
            record_key=record_key,
            raw=self.blocks.get(record_cid, b""),
        )
