"""Tests for committing fetch results to the mod store."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from nimble.exceptions import CorruptArchiveError, DigestMismatchError, IoError
from nimble.filesystem.applier import Applier
from nimble.filesystem.atomic import create_staging_file
from nimble.filesystem.manifest_codec import load_cached_manifest
from nimble.filesystem.paths import BACKUP_SUFFIX, STAGING_PREFIX
from nimble.services.hashing_service import BlockHasher
from nimble.services.transfer_service import (
    FetchResult,
    StagedRange,
    Transfer,
    TransferMode,
)
from tests.helpers import build_pbo, make_manifest, make_record, write_files

if TYPE_CHECKING:
    from pathlib import Path

OLD = b"A" * 16 + b"B" * 16 + b"C" * 16
NEW = b"A" * 16 + b"X" * 16 + b"C" * 16


def _applier(mod_dir: Path) -> Applier:
    mod_dir.mkdir(parents=True, exist_ok=True)
    return Applier(mod_dir, hasher=BlockHasher(16))


def _whole(mod_dir: Path, path: str, data: bytes, expected: bytes | None = None) -> FetchResult:
    record = make_record(path, expected if expected is not None else data)
    staged = create_staging_file(mod_dir / path)
    staged.write_bytes(data)
    return FetchResult(Transfer(path, record, TransferMode.WHOLE), staged)


def _ranged(mod_dir: Path, path: str, new: bytes, offsets: list[int]) -> FetchResult:
    record = make_record(path, new)
    blocks = tuple(b for b in record.blocks if b.offset in offsets)
    staged = create_staging_file(mod_dir / path)
    staged.write_bytes(b"".join(new[b.offset : b.end] for b in blocks))
    ranges = []
    position = 0
    for block in blocks:
        ranges.append(StagedRange(block.offset, block.length, position))
        position += block.length
    return FetchResult(Transfer(path, record, TransferMode.RANGED, blocks), staged, tuple(ranges))


def _leftovers(mod_dir: Path) -> list[str]:
    return sorted(
        p.name
        for p in mod_dir.rglob("*")
        if p.name.startswith(STAGING_PREFIX) or p.name.endswith(BACKUP_SUFFIX)
    )


class TestCommitWhole:
    def test_add_creates_file_and_stamps_mtime(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        applier = _applier(mod_dir)

        record = applier.commit(_whole(mod_dir, "addons/new.bin", b"fresh"))

        assert (mod_dir / "addons/new.bin").read_bytes() == b"fresh"
        assert record.mtime_ns == (mod_dir / "addons/new.bin").stat().st_mtime_ns
        assert _leftovers(mod_dir) == []

    def test_update_replaces_existing_content(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        applier = _applier(mod_dir)

        applier.commit(_whole(mod_dir, "a.bin", NEW))

        assert (mod_dir / "a.bin").read_bytes() == NEW

    def test_corrupt_archive_leaves_target_untouched(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        old_pbo = build_pbo({"a.txt": b"old"})
        write_files(mod_dir, {"a.pbo": old_pbo})
        applier = _applier(mod_dir)

        with pytest.raises(CorruptArchiveError):
            applier.commit(_whole(mod_dir, "a.pbo", b"definitely not a pbo"))

        assert (mod_dir / "a.pbo").read_bytes() == old_pbo
        assert _leftovers(mod_dir) == []

    def test_valid_archive_is_committed(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        new_pbo = build_pbo({"a.txt": b"new"})
        applier = _applier(mod_dir)

        applier.commit(_whole(mod_dir, "a.pbo", new_pbo))

        assert (mod_dir / "a.pbo").read_bytes() == new_pbo


class TestCommitRanges:
    def test_patches_only_changed_blocks(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        applier = _applier(mod_dir)

        record = applier.commit(_ranged(mod_dir, "a.bin", NEW, [16]))

        assert (mod_dir / "a.bin").read_bytes() == NEW
        assert record.whole_file_digest == make_record("a.bin", NEW).whole_file_digest
        assert _leftovers(mod_dir) == []

    def test_shrinking_file_is_truncated(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        new = b"A" * 16 + b"Y" * 5
        applier = _applier(mod_dir)

        applier.commit(_ranged(mod_dir, "a.bin", new, [16]))

        assert (mod_dir / "a.bin").read_bytes() == new

    def test_ranged_result_without_blocks_truncates(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        applier = _applier(mod_dir)

        record = applier.commit(_ranged(mod_dir, "a.bin", OLD[:32], []))

        assert (mod_dir / "a.bin").read_bytes() == OLD[:32]
        assert record.size_bytes == 32
        assert _leftovers(mod_dir) == []

    def test_growing_file_is_extended(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        new = OLD + b"D" * 9
        applier = _applier(mod_dir)

        applier.commit(_ranged(mod_dir, "a.bin", new, [48]))

        assert (mod_dir / "a.bin").read_bytes() == new

    def test_stale_base_is_rolled_back(self, tmp_path: Path) -> None:
        # The local file changed since it was hashed, so the patched result is wrong.
        mod_dir = tmp_path / "@mod"
        drifted = b"Q" * 16 + b"B" * 16 + b"C" * 16
        write_files(mod_dir, {"a.bin": drifted})
        applier = _applier(mod_dir)

        with pytest.raises(DigestMismatchError):
            applier.commit(_ranged(mod_dir, "a.bin", NEW, [16]))

        assert (mod_dir / "a.bin").read_bytes() == drifted
        assert _leftovers(mod_dir) == []

    def test_patched_archive_failing_validation_is_rolled_back(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        old_pbo = build_pbo({"a.txt": b"x" * 40})
        new_content = bytearray(old_pbo)
        new_content[-1] ^= 0xFF  # breaks the SHA-1 trailer, digest still matches the record
        write_files(mod_dir, {"a.pbo": old_pbo})
        applier = _applier(mod_dir)
        changed = (len(old_pbo) - 1) // 16 * 16

        with pytest.raises(CorruptArchiveError):
            applier.commit(_ranged(mod_dir, "a.pbo", bytes(new_content), [changed]))

        assert (mod_dir / "a.pbo").read_bytes() == old_pbo

    def test_missing_target_cannot_be_patched(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        applier = _applier(mod_dir)
        result = _ranged(mod_dir, "a.bin", NEW, [16])

        with pytest.raises(IoError, match="missing"):
            applier.commit(result)
        assert not result.staged_path.exists()


class TestRecovery:
    def test_interrupted_patch_is_restored_from_backup(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        # State left behind by a process killed halfway through a range patch.
        write_files(
            mod_dir,
            {
                "addons/a.bin": b"A" * 16 + b"X" * 7,
                "addons/a.bin" + BACKUP_SUFFIX: OLD,
                "addons/" + STAGING_PREFIX + "abc": b"X" * 16,
            },
        )
        applier = _applier(mod_dir)

        restored = applier.recover_interrupted()

        assert restored == ["addons/a.bin"]
        assert (mod_dir / "addons/a.bin").read_bytes() == OLD
        assert _leftovers(mod_dir) == []

    def test_nothing_to_recover(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"a.bin": OLD})
        assert _applier(mod_dir).recover_interrupted() == []
        assert (mod_dir / "a.bin").read_bytes() == OLD


class TestDelete:
    def test_delete_removes_file_and_empty_parents(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        write_files(mod_dir, {"addons/sub/c.pbo": b"c", "keep.txt": b"k"})
        applier = _applier(mod_dir)

        applier.delete("addons/sub/c.pbo")

        assert not (mod_dir / "addons").exists()
        assert (mod_dir / "keep.txt").exists()
        assert mod_dir.is_dir()

    def test_delete_of_absent_file_succeeds(self, tmp_path: Path) -> None:
        _applier(tmp_path / "@mod").delete("never/there.pbo")

    def test_delete_outside_mod_directory_is_refused(self, tmp_path: Path) -> None:
        (tmp_path / "victim.txt").write_text("keep")
        with pytest.raises(IoError):
            _applier(tmp_path / "@mod").delete("../victim.txt")
        assert (tmp_path / "victim.txt").exists()


class TestCommitManifest:
    def test_writes_cache_manifest(self, tmp_path: Path) -> None:
        mod_dir = tmp_path / "@mod"
        manifest = make_manifest("@mod", {"a.bin": OLD})
        _applier(mod_dir).commit_manifest(manifest)
        assert load_cached_manifest(mod_dir, 16) == manifest
