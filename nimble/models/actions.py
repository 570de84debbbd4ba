"""Per-file actions produced by diffing two manifests."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from nimble.models.manifest import FileRecord


class ActionKind(StrEnum):
    """What must happen to one path to make local match remote."""

    ADD = "add"
    DELETE = "delete"
    UPDATE = "update"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class FileAction:
    """A single entry of a diff.

    ``record`` is the remote record for ADD, UPDATE and UNCHANGED and the
    local record for DELETE. ``changed_offsets`` lists, in ascending order,
    the remote block offsets an UPDATE must re-fetch.
    """

    kind: ActionKind
    record: FileRecord
    changed_offsets: tuple[int, ...] = ()

    @classmethod
    def add(cls, record: FileRecord) -> FileAction:
        return cls(ActionKind.ADD, record)

    @classmethod
    def delete(cls, record: FileRecord) -> FileAction:
        return cls(ActionKind.DELETE, record)

    @classmethod
    def update(cls, record: FileRecord, changed_offsets: tuple[int, ...]) -> FileAction:
        return cls(ActionKind.UPDATE, record, changed_offsets)

    @classmethod
    def unchanged(cls, record: FileRecord) -> FileAction:
        return cls(ActionKind.UNCHANGED, record)

    @property
    def path(self) -> str:
        return self.record.path

    def changed_fraction(self) -> float:
        """Fraction of the remote blocks an UPDATE re-fetches (1.0 for empty files)."""
        if not self.record.blocks:
            return 1.0
        return len(self.changed_offsets) / len(self.record.blocks)
