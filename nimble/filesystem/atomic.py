"""Atomic file replacement."""

from __future__ import annotations

import contextlib
import os
import tempfile
from typing import TYPE_CHECKING

from nimble.exceptions import IoError
from nimble.filesystem.paths import STAGING_PREFIX

if TYPE_CHECKING:
    from pathlib import Path


def create_staging_file(target: Path) -> Path:
    """Create an empty staging file next to ``target`` and return its path.

    Staging files live in the target's directory so the final ``os.replace``
    never crosses a filesystem boundary.
    """
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, raw_path = tempfile.mkstemp(prefix=STAGING_PREFIX, dir=target.parent)
    except OSError as exc:
        raise IoError(f"Cannot create staging file for {target}: {exc}", path=str(target)) from exc
    os.close(fd)
    return target.parent / os.path.basename(raw_path)


def discard(path: Path) -> None:
    """Remove a staging or backup file if it exists."""
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def replace_file(staged: Path, target: Path) -> None:
    """Move a complete, verified staging file over ``target``."""
    try:
        os.replace(staged, target)
    except OSError as exc:
        raise IoError(f"Cannot replace {target}: {exc}", path=str(target)) from exc


def atomic_write_bytes(target: Path, data: bytes) -> None:
    """Write ``data`` to ``target`` so readers see either the old or the new content."""
    staged = create_staging_file(target)
    try:
        with open(staged, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        replace_file(staged, target)
    except OSError as exc:
        discard(staged)
        raise IoError(f"Cannot write {target}: {exc}", path=str(target)) from exc
    except BaseException:
        discard(staged)
        raise
