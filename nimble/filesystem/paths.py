"""Path helpers for the mod store."""

from __future__ import annotations

from pathlib import Path

CACHE_MANIFEST_NAME = "mod.srf"
MOD_CACHE_NAME = "nimble-cache.json"
STAGING_PREFIX = ".nimble-staging-"
BACKUP_SUFFIX = ".nimble-backup"


def is_internal_file(name: str) -> bool:
    """Return True for files the client itself keeps inside a mod directory."""
    return (
        name == CACHE_MANIFEST_NAME
        or name.startswith(STAGING_PREFIX)
        or name.endswith(BACKUP_SUFFIX)
    )


def safe_local_path(base_dir: Path, rel_path: str) -> Path | None:
    """Resolve a manifest path within base_dir, returning None on traversal."""
    local_path = (base_dir / rel_path).resolve()
    if not local_path.is_relative_to(base_dir.resolve()):
        return None
    return local_path


def backup_path_for(target: Path) -> Path:
    return target.with_name(target.name + BACKUP_SUFFIX)
