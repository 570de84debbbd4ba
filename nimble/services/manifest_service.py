"""Build content manifests from mod directories on disk."""

from __future__ import annotations

import logging
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from nimble.config import DEFAULT_BLOCK_SIZE
from nimble.exceptions import IoError, StorePermissionError
from nimble.filesystem.manifest_codec import save_cached_manifest
from nimble.filesystem.mod_cache import ModCache, save_mod_cache
from nimble.filesystem.paths import is_internal_file
from nimble.models.manifest import FileKind, FileRecord, ModManifest, normalize_relative_path
from nimble.services.hashing_service import BlockHasher

if TYPE_CHECKING:
    from nimble.config import Settings

logger = logging.getLogger(__name__)

MOD_DIR_PREFIX = "@"


def discover_mods(store_root: Path) -> list[str]:
    """Return the names of mod directories (``@``-prefixed) directly under store_root."""
    try:
        entries = list(store_root.iterdir())
    except FileNotFoundError as exc:
        raise IoError(f"Mod store does not exist: {store_root}", path=str(store_root)) from exc
    except PermissionError as exc:
        raise StorePermissionError(f"Cannot list {store_root}", path=str(store_root)) from exc
    except OSError as exc:
        raise IoError(f"Cannot list {store_root}: {exc}", path=str(store_root)) from exc
    return sorted(
        (
            entry.name
            for entry in entries
            if entry.is_dir() and entry.name.startswith(MOD_DIR_PREFIX)
        ),
        key=str.lower,
    )


class ManifestBuilder:
    """Walk a mod directory and hash every regular file in fixed-size blocks.

    Building is side-effect free; persisting the result is the caller's job.
    """

    def __init__(
        self,
        block_size: int = DEFAULT_BLOCK_SIZE,
        workers: int = 4,
        follow_symlinks: bool = False,
    ) -> None:
        self.hasher = BlockHasher(block_size)
        self.workers = workers
        self.follow_symlinks = follow_symlinks

    @classmethod
    def from_settings(cls, settings: Settings) -> ManifestBuilder:
        return cls(
            block_size=settings.block_size,
            workers=settings.hash_workers,
            follow_symlinks=settings.follow_symlinks,
        )

    @property
    def block_size(self) -> int:
        return self.hasher.block_size

    def list_files(self, mod_dir: Path) -> list[tuple[str, Path]]:
        """Enumerate regular files under mod_dir as (normalized relative path, full path)."""

        def _raise(exc: OSError) -> NoReturn:
            if isinstance(exc, PermissionError):
                raise StorePermissionError(
                    f"Cannot list {exc.filename}", path=exc.filename
                ) from exc
            raise IoError(f"Cannot list {exc.filename}: {exc}", path=exc.filename) from exc

        found: list[tuple[str, Path]] = []
        visited: set[tuple[int, int]] = set()
        for root, dirs, files in os.walk(mod_dir, onerror=_raise, followlinks=self.follow_symlinks):
            if self.follow_symlinks:
                try:
                    st = os.stat(root)
                except OSError as exc:
                    _raise(exc)
                if (st.st_dev, st.st_ino) in visited:
                    logger.warning("Skipping already visited directory %s", root)
                    dirs.clear()
                    continue
                visited.add((st.st_dev, st.st_ino))
            else:
                for name in dirs:
                    if os.path.islink(os.path.join(root, name)):
                        logger.warning("Skipping symbolic link %s", os.path.join(root, name))
            dirs.sort()
            for filename in sorted(files):
                full = Path(root) / filename
                if is_internal_file(filename):
                    continue
                if full.is_symlink() and not self.follow_symlinks:
                    logger.warning("Skipping symbolic link %s", full)
                    continue
                rel = normalize_relative_path(full.relative_to(mod_dir).as_posix())
                found.append((rel, full))
        return found

    def _record_for(self, rel: str, full: Path, cached: ModManifest | None) -> FileRecord:
        try:
            st = full.stat()
        except FileNotFoundError as exc:
            raise IoError(f"File vanished during scan: {full}", path=str(full)) from exc
        except PermissionError as exc:
            raise StorePermissionError(f"Cannot stat {full}", path=str(full)) from exc
        except OSError as exc:
            raise IoError(f"Cannot stat {full}: {exc}", path=str(full)) from exc
        if not stat.S_ISREG(st.st_mode):
            raise IoError(f"Not a regular file: {full}", path=str(full))

        previous = cached.get(rel) if cached is not None else None
        if (
            previous is not None
            and previous.mtime_ns is not None
            and previous.mtime_ns == st.st_mtime_ns
            and previous.size_bytes == st.st_size
        ):
            return previous

        try:
            result = self.hasher.hash_file(full)
        except IoError as exc:
            if not full.exists():
                raise IoError(f"File vanished during scan: {full}", path=str(full)) from exc
            raise
        return FileRecord(
            path=rel,
            size_bytes=result.size_bytes,
            whole_file_digest=result.whole_file_digest,
            blocks=result.blocks,
            kind=FileKind.for_path(rel),
            mtime_ns=st.st_mtime_ns,
        )

    def build(
        self, mod_dir: Path, name: str | None = None, cached: ModManifest | None = None
    ) -> ModManifest:
        """Build the manifest of one mod directory.

        ``cached`` is the last persisted manifest; a file whose size and
        modification time both match its cached record is not re-hashed.
        A cache built with another block size is ignored.
        """
        mod_name = name or mod_dir.name
        if not mod_dir.is_dir():
            raise IoError(f"Mod directory does not exist: {mod_dir}", path=str(mod_dir))
        if cached is not None and cached.block_size != self.block_size:
            logger.info("Ignoring cache for %s: block size changed", mod_name)
            cached = None

        files = self.list_files(mod_dir)
        with ThreadPoolExecutor(max_workers=self.workers) as ex:
            records = list(ex.map(lambda item: self._record_for(item[0], item[1], cached), files))

        reused = sum(
            1 for record in records if cached is not None and cached.get(record.path) is record
        )
        logger.info(
            "Built manifest for %s: %d files, %d hashed, %d from cache",
            mod_name,
            len(records),
            len(records) - reused,
            reused,
        )
        return ModManifest.build(mod_name, records, self.block_size)


def regenerate_manifests(store_root: Path, builder: ManifestBuilder) -> ModCache:
    """Rebuild and persist the cache manifest of every mod, then replace the root cache.

    Every file is re-hashed; existing cache manifests are not consulted.
    """
    cache = ModCache()
    for name in discover_mods(store_root):
        manifest = builder.build(store_root / name, name)
        save_cached_manifest(store_root / name, manifest)
        cache = cache.with_mod(manifest.checksum, name)
    save_mod_cache(store_root, cache)
    logger.info("Regenerated manifests for %d mods in %s", len(cache.mods), store_root)
    return cache
