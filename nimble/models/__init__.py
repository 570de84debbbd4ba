"""Domain models for manifests and diff actions."""

from nimble.models.actions import ActionKind, FileAction
from nimble.models.manifest import BlockDigest, FileKind, FileRecord, ModManifest

__all__ = [
    "ActionKind",
    "BlockDigest",
    "FileAction",
    "FileKind",
    "FileRecord",
    "ModManifest",
]
