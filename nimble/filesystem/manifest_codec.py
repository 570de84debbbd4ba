"""Serialization of mod manifests for the wire and for the local cache.

Both representations share the ``mod.srf`` JSON schema. The cache adds a
schema version and per-file modification times; the wire form omits them.
Decoding validates the block layout of every file and never returns a
partially trusted manifest.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from nimble.config import DEFAULT_BLOCK_SIZE
from nimble.exceptions import FormatError, IoError, StorePermissionError
from nimble.filesystem.atomic import atomic_write_bytes
from nimble.filesystem.legacy_srf import is_legacy_srf, parse_legacy_srf
from nimble.filesystem.paths import CACHE_MANIFEST_NAME
from nimble.models.manifest import (
    BlockDigest,
    FileRecord,
    ModManifest,
    block_layout_violation,
    compute_mod_checksum,
    normalize_relative_path,
)
from nimble.schemas.srf import SrfFile, SrfMod, SrfPart

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


def _part_name(record: FileRecord, block: BlockDigest) -> str:
    return f"{record.path.rsplit('/', 1)[-1]}_{block.end}"


def to_schema(manifest: ModManifest, *, for_cache: bool = False) -> SrfMod:
    """Convert a manifest to its schema model, files in lexical path order."""
    files = [
        SrfFile(
            path=record.path,
            length=record.size_bytes,
            checksum=record.whole_file_digest,
            type=record.kind,
            parts=[
                SrfPart(
                    path=_part_name(record, block),
                    start=block.offset,
                    length=block.length,
                    checksum=block.digest,
                )
                for block in record.blocks
            ],
            modified_time=record.mtime_ns if for_cache else None,
        )
        for record in (manifest.files[path] for path in manifest.sorted_paths())
    ]
    return SrfMod(
        name=manifest.name,
        checksum=manifest.checksum or compute_mod_checksum(manifest.files.values()),
        block_size=manifest.block_size,
        files=files,
        cache_version=CACHE_VERSION if for_cache else None,
    )


def from_schema(
    srf: SrfMod, *, default_block_size: int = DEFAULT_BLOCK_SIZE, keep_mtimes: bool = False
) -> ModManifest:
    """Build a validated manifest from its schema model.

    Raises FormatError for unsafe or duplicate paths and for any file whose
    parts are not a contiguous fixed-size block layout covering its length.
    """
    block_size = srf.block_size or default_block_size
    records: dict[str, FileRecord] = {}
    for srf_file in srf.files:
        try:
            path = normalize_relative_path(srf_file.path)
        except ValueError as exc:
            raise FormatError(f"Manifest {srf.name!r}: {exc}") from None
        if path in records:
            raise FormatError(f"Manifest {srf.name!r}: duplicate path {path!r}")

        blocks = tuple(
            BlockDigest(offset=part.start, length=part.length, digest=part.checksum)
            for part in srf_file.parts
        )
        violation = block_layout_violation(srf_file.length, blocks, block_size)
        if violation is not None:
            raise FormatError(f"Manifest {srf.name!r}: file {path!r}: {violation}")

        records[path] = FileRecord(
            path=path,
            size_bytes=srf_file.length,
            whole_file_digest=srf_file.checksum,
            blocks=blocks,
            kind=srf_file.type,
            mtime_ns=srf_file.modified_time if keep_mtimes else None,
        )
    return ModManifest(
        name=srf.name, files=records, block_size=block_size, checksum=srf.checksum
    )


def _load_document(data: bytes | str) -> SrfMod:
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise FormatError(f"Manifest is not valid UTF-8: {exc}") from None
    else:
        text = data.removeprefix("\ufeff")

    try:
        document: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        if is_legacy_srf(text):
            return parse_legacy_srf(text)
        raise FormatError(f"Manifest is not valid JSON: {exc}") from None

    try:
        return SrfMod.model_validate(document)
    except ValidationError as exc:
        raise FormatError(f"Manifest does not match the SRF schema: {exc}") from None


def encode_wire(manifest: ModManifest) -> bytes:
    data = to_schema(manifest).model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(data, indent=2).encode("utf-8")


def decode_wire(data: bytes | str, default_block_size: int = DEFAULT_BLOCK_SIZE) -> ModManifest:
    """Decode a manifest served by a repository (JSON or legacy text)."""
    return from_schema(_load_document(data), default_block_size=default_block_size)


def encode_cache(manifest: ModManifest) -> bytes:
    data = to_schema(manifest, for_cache=True).model_dump(
        mode="json", by_alias=True, exclude_none=True
    )
    return json.dumps(data, indent=2).encode("utf-8")


def decode_cache(data: bytes | str, default_block_size: int = DEFAULT_BLOCK_SIZE) -> ModManifest:
    """Decode a local cache manifest, keeping modification times.

    A ``mod.srf`` written by another tool (no cache version) is accepted
    without modification times; an unknown cache version is a FormatError.
    """
    srf = _load_document(data)
    if srf.cache_version is not None and srf.cache_version != CACHE_VERSION:
        raise FormatError(f"Unsupported cache manifest version {srf.cache_version}")
    return from_schema(
        srf,
        default_block_size=default_block_size,
        keep_mtimes=srf.cache_version is not None,
    )


def load_cached_manifest(
    mod_dir: Path, default_block_size: int = DEFAULT_BLOCK_SIZE
) -> ModManifest | None:
    """Load ``mod.srf`` from a mod directory, returning None when there is none."""
    cache_path = mod_dir / CACHE_MANIFEST_NAME
    try:
        data = cache_path.read_bytes()
    except FileNotFoundError:
        return None
    except PermissionError as exc:
        raise StorePermissionError(f"Cannot read {cache_path}", path=str(cache_path)) from exc
    except OSError as exc:
        raise IoError(f"Cannot read {cache_path}: {exc}", path=str(cache_path)) from exc
    try:
        return decode_cache(data, default_block_size)
    except FormatError as exc:
        raise FormatError(f"Corrupt cache manifest {cache_path}: {exc}") from exc


def save_cached_manifest(mod_dir: Path, manifest: ModManifest) -> None:
    """Atomically replace the cache manifest of a mod directory."""
    atomic_write_bytes(mod_dir / CACHE_MANIFEST_NAME, encode_cache(manifest))
    logger.debug("Wrote cache manifest for %s (%d files)", manifest.name, len(manifest.files))
