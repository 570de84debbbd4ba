"""Commit verified transfer results to the mod store.

Whole files are staged next to their target and renamed over it. Range
patches keep a complete backup copy of the target until every range is
written and the patched file has been verified; an interrupted patch is
rolled back from that backup on the next pass. The cache manifest is
replaced in one atomic write once a mod has been fully committed.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from nimble.exceptions import DigestMismatchError, IoError, NimbleError
from nimble.filesystem.atomic import create_staging_file, discard, replace_file
from nimble.filesystem.manifest_codec import save_cached_manifest
from nimble.filesystem.paths import (
    BACKUP_SUFFIX,
    STAGING_PREFIX,
    backup_path_for,
    safe_local_path,
)
from nimble.services.archive_service import ArchiveValidatorRegistry, default_registry
from nimble.services.hashing_service import BlockHasher

if TYPE_CHECKING:
    from nimble.models.manifest import FileRecord, ModManifest
    from nimble.services.transfer_service import FetchResult

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024


class Applier:
    """Single writer for one mod directory."""

    def __init__(
        self,
        mod_dir: Path,
        *,
        hasher: BlockHasher | None = None,
        validators: ArchiveValidatorRegistry | None = None,
    ) -> None:
        self.mod_dir = mod_dir
        self.hasher = hasher or BlockHasher()
        self.validators = validators or default_registry()

    def _target(self, path: str) -> Path:
        target = safe_local_path(self.mod_dir, path)
        if target is None:
            raise IoError(f"Refusing to write outside the mod directory: {path}", path=path)
        return target

    def _stamped(self, record: FileRecord, target: Path) -> FileRecord:
        try:
            return record.with_mtime(target.stat().st_mtime_ns)
        except OSError as exc:
            raise IoError(f"Cannot stat {target}: {exc}", path=str(target)) from exc

    # Recovery ------------------------------------------------------------

    def recover_interrupted(self) -> list[str]:
        """Roll back interrupted range patches and remove leftover staging files.

        Returns the relative paths that were restored from a backup.
        """
        restored: list[str] = []
        if not self.mod_dir.is_dir():
            return restored
        for root, _dirs, files in os.walk(self.mod_dir):
            for filename in files:
                full = os.path.join(root, filename)
                if filename.startswith(STAGING_PREFIX):
                    logger.info("Removing leftover staging file %s", full)
                    discard(Path(full))
                elif filename.endswith(BACKUP_SUFFIX):
                    original = full[: -len(BACKUP_SUFFIX)]
                    try:
                        os.replace(full, original)
                    except OSError as exc:
                        raise IoError(f"Cannot restore {original}: {exc}", path=original) from exc
                    rel = os.path.relpath(original, self.mod_dir).replace(os.sep, "/")
                    logger.warning("Restored %s from an interrupted patch", rel)
                    restored.append(rel)
        return sorted(restored)

    # Commits -------------------------------------------------------------

    def commit(self, result: FetchResult) -> FileRecord:
        """Commit a fetch result and return its record stamped with the new mtime.

        On any failure the target keeps its previous content and the
        staging file is removed.
        """
        try:
            if result.ranged:
                return self._commit_ranges(result)
            return self._commit_whole(result)
        finally:
            result.discard()

    def _validate(self, path: Path, name: str) -> None:
        self.validators.validate_file(path, name)

    def _commit_whole(self, result: FetchResult) -> FileRecord:
        record = result.transfer.record
        target = self._target(record.path)
        self._validate(result.staged_path, record.path)
        replace_file(result.staged_path, target)
        logger.debug("Committed %s (%d bytes)", record.path, record.size_bytes)
        return self._stamped(record, target)

    def _make_backup(self, target: Path) -> Path:
        backup = backup_path_for(target)
        staged = create_staging_file(target)
        try:
            shutil.copy2(target, staged)
            replace_file(staged, backup)
        except OSError as exc:
            discard(staged)
            raise IoError(f"Cannot back up {target}: {exc}", path=str(target)) from exc
        return backup

    def _commit_ranges(self, result: FetchResult) -> FileRecord:
        record = result.transfer.record
        target = self._target(record.path)
        if not target.is_file():
            raise IoError(f"Cannot patch missing file {record.path}", path=record.path)

        backup = self._make_backup(target)
        try:
            with open(result.staged_path, "rb") as staged, open(target, "r+b") as out:
                for staged_range in result.ranges:
                    staged.seek(staged_range.staging_offset)
                    out.seek(staged_range.offset)
                    remaining = staged_range.length
                    while remaining:
                        chunk = staged.read(min(_COPY_CHUNK, remaining))
                        if not chunk:
                            raise IoError(f"Staged data for {record.path} is truncated")
                        out.write(chunk)
                        remaining -= len(chunk)
                out.truncate(record.size_bytes)
                out.flush()
                os.fsync(out.fileno())

            actual = self.hasher.hash_file(target).whole_file_digest
            if actual != record.whole_file_digest:
                raise DigestMismatchError(record.path, record.whole_file_digest, actual)
            self._validate(target, record.path)
        except (NimbleError, OSError) as exc:
            self._restore(backup, target)
            if isinstance(exc, OSError):
                raise IoError(f"Cannot patch {record.path}: {exc}", path=record.path) from exc
            raise
        discard(backup)
        logger.debug("Patched %d blocks of %s", len(result.ranges), record.path)
        return self._stamped(record, target)

    def _restore(self, backup: Path, target: Path) -> None:
        try:
            os.replace(backup, target)
        except OSError as exc:
            raise IoError(
                f"Cannot restore {target} from {backup}: {exc}", path=str(target)
            ) from exc
        logger.info("Rolled back %s", target)

    def delete(self, path: str) -> None:
        """Remove a file; a file that is already gone counts as deleted.

        Directories left empty by the removal are pruned up to the mod directory.
        """
        target = self._target(path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.debug("Delete of %s: already absent", path)
        except OSError as exc:
            raise IoError(f"Cannot delete {path}: {exc}", path=path) from exc
        parent = target.parent
        root = self.mod_dir.resolve()
        while parent != root and parent.is_relative_to(root):
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def commit_manifest(self, manifest: ModManifest) -> None:
        save_cached_manifest(self.mod_dir, manifest)
