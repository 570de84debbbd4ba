"""Root-level cache mapping mod checksums to mod directory names."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from nimble.exceptions import FormatError, IoError, StorePermissionError
from nimble.filesystem.atomic import atomic_write_bytes
from nimble.filesystem.paths import MOD_CACHE_NAME

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = logging.getLogger(__name__)

MOD_CACHE_VERSION = 1


@dataclass(frozen=True)
class ModCache:
    """Last fully synchronized checksum of every mod in a store.

    A value, not shared state: a sync pass loads it, derives a new one and
    writes that back in a single atomic replace.
    """

    mods: Mapping[str, str] = field(default_factory=dict)
    version: int = MOD_CACHE_VERSION

    def contains(self, checksum: str, name: str) -> bool:
        return self.mods.get(checksum.upper(), "").lower() == name.lower()

    def names(self) -> list[str]:
        return sorted(set(self.mods.values()), key=str.lower)

    def with_mod(self, checksum: str, name: str) -> ModCache:
        """Return a cache recording ``name`` at ``checksum`` and dropping its older entries."""
        mods = {k: v for k, v in self.mods.items() if v.lower() != name.lower()}
        mods[checksum.upper()] = name
        return ModCache(mods=mods, version=self.version)

    def without(self, name: str) -> ModCache:
        return ModCache(
            mods={k: v for k, v in self.mods.items() if v.lower() != name.lower()},
            version=self.version,
        )

    def to_json(self) -> str:
        data = {
            "version": self.version,
            "mods": {checksum: {"name": name} for checksum, name in sorted(self.mods.items())},
        }
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, text: str) -> ModCache:
        """Parse a cache document. Raises FormatError on any malformed content."""
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise FormatError(f"Mod cache is not valid JSON: {exc}") from None
        if not isinstance(data, dict) or not isinstance(data.get("mods"), dict):
            raise FormatError("Mod cache must be an object with a 'mods' mapping")
        version = data.get("version")
        if version != MOD_CACHE_VERSION:
            raise FormatError(f"Unsupported mod cache version {version!r}")
        mods: dict[str, str] = {}
        for checksum, entry in data["mods"].items():
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise FormatError(f"Mod cache entry {checksum!r} has no name")
            mods[checksum.upper()] = entry["name"]
        return cls(mods=mods, version=version)


def load_mod_cache(store_root: Path) -> ModCache:
    """Load the root cache, returning an empty cache when the file does not exist."""
    cache_path = store_root / MOD_CACHE_NAME
    try:
        text = cache_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No mod cache at %s, starting empty", cache_path)
        return ModCache()
    except PermissionError as exc:
        raise StorePermissionError(f"Cannot read {cache_path}", path=str(cache_path)) from exc
    except OSError as exc:
        raise IoError(f"Cannot read {cache_path}: {exc}", path=str(cache_path)) from exc
    return ModCache.from_json(text)


def save_mod_cache(store_root: Path, cache: ModCache) -> None:
    atomic_write_bytes(store_root / MOD_CACHE_NAME, cache.to_json().encode("utf-8"))
