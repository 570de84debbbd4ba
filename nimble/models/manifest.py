"""Content manifest of one mod directory."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import cached_property
from typing import TYPE_CHECKING

from nimble.config import DEFAULT_BLOCK_SIZE

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class FileKind(StrEnum):
    """File type tag carried in the wire format."""

    FILE = "SwiftyFile"
    PBO = "SwiftyPboFile"

    @classmethod
    def for_path(cls, path: str) -> FileKind:
        return cls.PBO if path.lower().endswith(".pbo") else cls.FILE


@dataclass(frozen=True)
class BlockDigest:
    """Fingerprint of one fixed-size byte range of a file."""

    offset: int
    length: int
    digest: str

    @property
    def end(self) -> int:
        return self.offset + self.length


@dataclass(frozen=True)
class FileRecord:
    """Size, whole-file digest and block digests of one file.

    ``mtime_ns`` only exists in the local cache and is excluded from equality:
    it lets the manifest builder skip re-hashing, nothing else.
    """

    path: str
    size_bytes: int
    whole_file_digest: str
    blocks: tuple[BlockDigest, ...]
    kind: FileKind = FileKind.FILE
    mtime_ns: int | None = field(default=None, compare=False)

    def block_at(self, offset: int) -> BlockDigest | None:
        index = self._index_by_offset.get(offset)
        return None if index is None else self.blocks[index]

    def with_mtime(self, mtime_ns: int | None) -> FileRecord:
        return replace(self, mtime_ns=mtime_ns)

    @cached_property
    def _index_by_offset(self) -> dict[int, int]:
        return {block.offset: i for i, block in enumerate(self.blocks)}


def block_layout_violation(
    size_bytes: int, blocks: Iterable[BlockDigest], block_size: int
) -> str | None:
    """Return a description of the first block layout invariant broken, or None.

    Blocks must start at 0, be contiguous, all be exactly ``block_size`` long
    except the last (which may be shorter but not empty), and add up to
    ``size_bytes``.
    """
    if size_bytes < 0:
        return f"negative size {size_bytes}"
    expected_offset = 0
    block_list = list(blocks)
    for index, block in enumerate(block_list):
        if block.offset != expected_offset:
            return f"block {index} starts at {block.offset}, expected {expected_offset}"
        is_last = index == len(block_list) - 1
        if block.length <= 0 or block.length > block_size:
            return f"block {index} has invalid length {block.length}"
        if not is_last and block.length != block_size:
            return f"block {index} has length {block.length}, expected {block_size}"
        expected_offset += block.length
    if expected_offset != size_bytes:
        return f"blocks cover {expected_offset} bytes but size is {size_bytes}"
    return None


def normalize_relative_path(raw: str) -> str:
    """Normalize a manifest path to ``/`` separators, preserving case.

    Raises ValueError for empty, absolute or parent-escaping paths.
    """
    path = raw.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    if not path:
        raise ValueError("empty path")
    if path.startswith("/") or (len(path) > 1 and path[1] == ":"):
        raise ValueError(f"absolute path not allowed: {raw!r}")
    segments = path.split("/")
    if any(segment in ("", ".", "..") for segment in segments):
        raise ValueError(f"path must not contain empty, '.' or '..' segments: {raw!r}")
    return path


def compute_mod_checksum(records: Iterable[FileRecord]) -> str:
    """Compute the mod-level checksum used to match repository entries."""
    hasher = hashlib.md5(usedforsecurity=False)
    for record in sorted(records, key=lambda r: r.path.upper()):
        hasher.update(record.whole_file_digest.encode("ascii"))
        hasher.update(record.path.lower().encode("utf-8"))
    return hasher.hexdigest().upper()


@dataclass(frozen=True)
class ModManifest:
    """Mapping of relative path to FileRecord for one mod directory.

    Manifests are values: diffs and updates build new instances. ``checksum``
    is the declared mod checksum (computed for locally built manifests) and
    does not take part in equality.
    """

    name: str
    files: Mapping[str, FileRecord]
    block_size: int = DEFAULT_BLOCK_SIZE
    checksum: str = field(default="", compare=False)

    @classmethod
    def build(
        cls, name: str, records: Iterable[FileRecord], block_size: int = DEFAULT_BLOCK_SIZE
    ) -> ModManifest:
        files = {record.path: record for record in records}
        return cls(
            name=name,
            files=files,
            block_size=block_size,
            checksum=compute_mod_checksum(files.values()),
        )

    @classmethod
    def empty(cls, name: str, block_size: int = DEFAULT_BLOCK_SIZE) -> ModManifest:
        return cls.build(name, [], block_size)

    def sorted_paths(self) -> list[str]:
        return sorted(self.files)

    def get(self, path: str) -> FileRecord | None:
        return self.files.get(path)

    def with_files(self, records: Iterable[FileRecord]) -> ModManifest:
        """Return a copy holding ``records``, keeping this manifest's declared checksum."""
        return replace(self, files={record.path: record for record in records})
