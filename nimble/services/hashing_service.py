"""Fixed-size block hashing of byte streams."""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO

from nimble.config import DEFAULT_BLOCK_SIZE
from nimble.exceptions import IoError, StorePermissionError
from nimble.models.manifest import BlockDigest

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

_READ_CHUNK = 1024 * 1024


def new_digest() -> hashlib._Hash:
    """Return a fresh accumulating hash of the kind used throughout manifests."""
    return hashlib.md5(usedforsecurity=False)


def hex_digest(hasher: hashlib._Hash) -> str:
    return hasher.hexdigest().upper()


def digest_bytes(data: bytes) -> str:
    """Compute the manifest digest (uppercase hex MD5) of ``data``."""
    hasher = new_digest()
    hasher.update(data)
    return hex_digest(hasher)


@dataclass(frozen=True)
class HashResult:
    """Outcome of hashing one complete byte source."""

    size_bytes: int
    whole_file_digest: str
    blocks: tuple[BlockDigest, ...]


class BlockSequence:
    """Lazy, restartable sequence of block digests over a seekable source.

    Each iteration rewinds the source and reads it exactly once, feeding the
    same bytes to the per-block hash and to the whole-file hash. The
    whole-file digest is available once an iteration has run to completion.
    """

    def __init__(self, source: BinaryIO, block_size: int) -> None:
        if block_size <= 0:
            raise ValueError(f"block size must be positive, got {block_size}")
        self._source = source
        self.block_size = block_size
        self._whole_file_digest: str | None = None
        self._size_bytes: int | None = None

    def __iter__(self) -> Iterator[BlockDigest]:
        self._whole_file_digest = None
        self._size_bytes = None
        try:
            self._source.seek(0)
        except OSError as exc:
            raise IoError(f"Cannot rewind source: {exc}") from exc

        whole = new_digest()
        offset = 0
        while True:
            block_hash = new_digest()
            length = 0
            while length < self.block_size:
                try:
                    chunk = self._source.read(min(_READ_CHUNK, self.block_size - length))
                except OSError as exc:
                    raise IoError(f"Read failed at offset {offset + length}: {exc}") from exc
                if not chunk:
                    break
                block_hash.update(chunk)
                whole.update(chunk)
                length += len(chunk)
            if length == 0:
                break
            yield BlockDigest(offset=offset, length=length, digest=hex_digest(block_hash))
            offset += length
            if length < self.block_size:
                break

        self._whole_file_digest = hex_digest(whole)
        self._size_bytes = offset

    @property
    def whole_file_digest(self) -> str:
        if self._whole_file_digest is None:
            raise RuntimeError("whole-file digest is only available after a full iteration")
        return self._whole_file_digest

    @property
    def size_bytes(self) -> int:
        if self._size_bytes is None:
            raise RuntimeError("size is only available after a full iteration")
        return self._size_bytes


class BlockHasher:
    """Compute block digests and whole-file digests with one fixed block size."""

    def __init__(self, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
        if block_size <= 0:
            raise ValueError(f"block size must be positive, got {block_size}")
        self.block_size = block_size

    def blocks(self, source: BinaryIO) -> BlockSequence:
        return BlockSequence(source, self.block_size)

    def hash_stream(self, source: BinaryIO) -> HashResult:
        sequence = self.blocks(source)
        blocks = tuple(sequence)
        return HashResult(
            size_bytes=sequence.size_bytes,
            whole_file_digest=sequence.whole_file_digest,
            blocks=blocks,
        )

    def hash_bytes(self, data: bytes) -> HashResult:
        return self.hash_stream(io.BytesIO(data))

    def hash_file(self, path: Path) -> HashResult:
        """Hash a file on disk. Raises IoError if it cannot be opened or read."""
        try:
            with open(path, "rb") as f:
                return self.hash_stream(f)
        except IoError as exc:
            raise IoError(f"Failed to hash {path}: {exc}", path=str(path)) from exc
        except PermissionError as exc:
            raise StorePermissionError(f"Permission denied: {path}", path=str(path)) from exc
        except OSError as exc:
            raise IoError(f"Failed to open {path}: {exc}", path=str(path)) from exc
