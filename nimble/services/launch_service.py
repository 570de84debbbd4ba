"""Build and open the Steam URL that starts the game with the synchronized mods."""

from __future__ import annotations

import logging
import sys
import webbrowser
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from nimble.exceptions import NimbleError
from nimble.filesystem.mod_cache import ModCache, load_mod_cache
from nimble.filesystem.paths import MOD_CACHE_NAME
from nimble.services.manifest_service import regenerate_manifests

if TYPE_CHECKING:
    from nimble.services.manifest_service import ManifestBuilder

logger = logging.getLogger(__name__)

STEAM_APP_ID = 107410
PROTON_DRIVE_DIR = "drive_c"


class LaunchError(NimbleError):
    """Raised when the game cannot be launched from the mod store."""


def to_proton_path(host_path: PurePosixPath) -> PurePosixPath:
    """Map a host path inside a Wine prefix to the ``c:/`` path the game sees.

    The nearest ancestor named ``drive_c`` (or the path itself) becomes ``c:/``.
    """
    for candidate in (host_path, *host_path.parents):
        if candidate.name == PROTON_DRIVE_DIR:
            return PurePosixPath("c:/", host_path.relative_to(candidate))
    raise LaunchError(f"{host_path} is not inside a Proton {PROTON_DRIVE_DIR} directory")


def game_store_path(store_root: Path, *, windows: bool | None = None) -> str:
    """Return the mod store path as the game will see it."""
    if windows is None:
        windows = sys.platform == "win32"
    if windows:
        return str(store_root)
    return str(to_proton_path(PurePosixPath(store_root)))


def build_launch_args(base_path: str, mod_names: list[str]) -> str:
    """Return ``-noLauncher -mod=`` followed by every mod path, each ending in ``;``."""
    separator = "\\" if "\\" in base_path else "/"
    base = base_path.rstrip("/\\")
    mods = "".join(f"{base}{separator}{name};" for name in sorted(mod_names, key=str.lower))
    return f"-noLauncher -mod={mods}"


def steam_launch_url(args: str) -> str:
    """Percent-encode every non-alphanumeric byte of ``args`` into a Steam run URL."""
    encoded = "".join(
        chr(byte) if chr(byte).isalnum() and byte < 0x80 else f"%{byte:02X}"
        for byte in args.encode("utf-8")
    )
    return f"steam://run/{STEAM_APP_ID}//{encoded}/"


def load_or_generate_cache(store_root: Path, builder: ManifestBuilder) -> ModCache:
    if not (store_root / MOD_CACHE_NAME).exists():
        logger.info("No mod cache in %s, generating manifests", store_root)
        return regenerate_manifests(store_root, builder)
    return load_mod_cache(store_root)


def launch_url(store_root: Path, builder: ManifestBuilder, *, windows: bool | None = None) -> str:
    cache = load_or_generate_cache(store_root, builder)
    base_path = game_store_path(store_root, windows=windows)
    return steam_launch_url(build_launch_args(base_path, cache.names()))


def open_url(url: str) -> None:
    logger.debug("Opening %s", url)
    if not webbrowser.open(url):
        raise LaunchError(f"No handler could open {url}")
