"""Structural validation of packed game archives after they are written.

Validators are looked up by file extension, then by leading magic bytes.
A new archive format is supported by registering another object that
satisfies ``ArchiveValidator``.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, BinaryIO, Protocol

from nimble.exceptions import CorruptArchiveError, IoError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_HEAD_SIZE = 16
_READ_CHUNK = 1024 * 1024


class ArchiveValidator(Protocol):
    """Checks that an archive's internal lengths and checksums agree."""

    name: str

    def validate(self, source: BinaryIO, size: int) -> None:
        """Raise CorruptArchiveError if the archive read from ``source`` is inconsistent."""
        ...


# PBO ---------------------------------------------------------------------

PBO_MIME_VERS = 0x56657273
PBO_MIME_CPRS = 0x43707273
PBO_MIME_ENCO = 0x456E6372
PBO_MIME_NONE = 0x00000000
_PBO_MIMES = {PBO_MIME_VERS, PBO_MIME_CPRS, PBO_MIME_ENCO, PBO_MIME_NONE}
_PBO_ENTRY = struct.Struct("<5I")
PBO_TRAILER_SIZE = 21  # zero byte + SHA-1


@dataclass(frozen=True)
class PboEntry:
    filename: str
    mime: int
    original_size: int
    offset: int
    timestamp: int
    data_size: int


@dataclass
class PboHeader:
    entries: list[PboEntry] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)
    header_len: int = 0

    @property
    def data_len(self) -> int:
        return sum(entry.data_size for entry in self.entries if entry.mime != PBO_MIME_VERS)


def _read_cstring(source: BinaryIO, limit: int) -> str:
    raw = bytearray()
    while True:
        byte = source.read(1)
        if not byte:
            raise CorruptArchiveError("PBO header ends inside a string")
        if byte == b"\0":
            return raw.decode("utf-8", errors="replace")
        raw += byte
        if len(raw) > limit:
            raise CorruptArchiveError("PBO header string exceeds the file size")


def read_pbo_header(source: BinaryIO, size: int) -> PboHeader:
    """Parse the PBO entry table, stopping at the terminating empty entry."""
    header = PboHeader()
    source.seek(0)
    while True:
        filename = _read_cstring(source, size)
        raw = source.read(_PBO_ENTRY.size)
        if len(raw) != _PBO_ENTRY.size:
            raise CorruptArchiveError("PBO header is truncated")
        mime, original_size, offset, timestamp, data_size = _PBO_ENTRY.unpack(raw)
        if mime not in _PBO_MIMES:
            raise CorruptArchiveError(
                f"PBO entry {filename!r} has unknown packing method {mime:#x}"
            )
        entry = PboEntry(filename, mime, original_size, offset, timestamp, data_size)
        if mime == PBO_MIME_NONE and not filename:
            break
        if mime == PBO_MIME_VERS:
            while True:
                key = _read_cstring(source, size)
                if not key:
                    break
                header.properties[key] = _read_cstring(source, size)
        header.entries.append(entry)
    header.header_len = source.tell()
    return header


class PboValidator:
    """Validates the PBO entry table, data length and optional SHA-1 trailer."""

    name = "pbo"

    def validate(self, source: BinaryIO, size: int) -> None:
        header = read_pbo_header(source, size)
        data_end = header.header_len + header.data_len
        if data_end > size:
            raise CorruptArchiveError(
                f"PBO entries need {data_end} bytes but the file has {size}"
            )
        trailing = size - data_end
        if trailing == 0:
            return
        if trailing != PBO_TRAILER_SIZE:
            raise CorruptArchiveError(f"PBO has {trailing} unexpected trailing bytes")

        sha = hashlib.sha1(usedforsecurity=False)
        source.seek(0)
        remaining = data_end
        while remaining:
            chunk = source.read(min(_READ_CHUNK, remaining))
            if not chunk:
                raise CorruptArchiveError("PBO data ended early")
            sha.update(chunk)
            remaining -= len(chunk)
        trailer = source.read(PBO_TRAILER_SIZE)
        if trailer[:1] != b"\0" or trailer[1:] != sha.digest():
            raise CorruptArchiveError("PBO SHA-1 trailer does not match its content")


# Registry ----------------------------------------------------------------


@dataclass(frozen=True)
class _Registration:
    validator: ArchiveValidator
    extensions: frozenset[str]
    magic: bytes | None


class ArchiveValidatorRegistry:
    """Capability lookup from file name or leading bytes to a validator."""

    def __init__(self) -> None:
        self._registrations: list[_Registration] = []

    def register(
        self,
        validator: ArchiveValidator,
        *,
        extensions: tuple[str, ...] = (),
        magic: bytes | None = None,
    ) -> None:
        if not extensions and magic is None:
            raise ValueError("A validator needs at least one extension or a magic prefix")
        self._registrations.append(
            _Registration(validator, frozenset(ext.lower() for ext in extensions), magic)
        )

    def lookup(self, name: str, head: bytes = b"") -> ArchiveValidator | None:
        lowered = name.lower()
        for registration in self._registrations:
            if any(lowered.endswith(ext) for ext in registration.extensions):
                return registration.validator
        for registration in self._registrations:
            if registration.magic is not None and head.startswith(registration.magic):
                return registration.validator
        return None

    def validate_file(self, path: Path, name: str | None = None) -> str | None:
        """Validate ``path`` if a validator applies; return the validator's name.

        ``name`` is the logical file name used for extension lookup, which
        differs from ``path`` while the content sits in a staging file.
        """
        try:
            with open(path, "rb") as source:
                head = source.read(_HEAD_SIZE)
                validator = self.lookup(name or path.name, head)
                if validator is None:
                    return None
                size = path.stat().st_size
                validator.validate(source, size)
        except OSError as exc:
            raise IoError(f"Cannot read {path} for validation: {exc}", path=str(path)) from exc
        logger.debug("Archive %s passed %s validation", name or path.name, validator.name)
        return validator.name


def default_registry() -> ArchiveValidatorRegistry:
    registry = ArchiveValidatorRegistry()
    registry.register(PboValidator(), extensions=(".pbo",), magic=b"\0sreV")
    return registry
