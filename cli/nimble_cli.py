"""Nimble command line: sync a mod store, regenerate its manifests, launch the game."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from nimble.config import Settings
from nimble.exceptions import NimbleError
from nimble.services.launch_service import launch_url, open_url
from nimble.services.manifest_service import ManifestBuilder, regenerate_manifests
from nimble.services.sync_service import SyncOptions, SyncService
from nimble.transport.http_transport import HttpTransport, validate_repo_url

if TYPE_CHECKING:
    from nimble.services.sync_service import SyncReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_PARTIAL = 2
EXIT_INTERRUPTED = 130


def _configure_logging(debug: bool, quiet: bool = False) -> None:
    """Configure CLI logging."""
    level = logging.DEBUG if debug else logging.WARNING if quiet else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stderr,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_report(report: SyncReport) -> None:
    """Print the per-mod summary of a sync pass."""
    title = f"Repository {report.repository}"
    if report.dry_run:
        title += " (dry run, nothing written)"
    print(title)
    for mod in report.mods:
        if mod.up_to_date:
            print(f"  {mod.name}: up to date")
            continue
        if mod.error is not None:
            print(f"  {mod.name}: FAILED ({mod.error})")
            continue
        print(
            f"  {mod.name}: {mod.added} added, {mod.updated} updated, "
            f"{mod.deleted} deleted, {mod.unchanged} unchanged, {mod.failed} failed"
        )
        for failure in mod.failures:
            print(f"    ! {failure.path}: {failure.error_type}: {failure.error}")
    if report.cancelled:
        print("Sync cancelled. The mod cache was not updated.")


def exit_code_for(report: SyncReport) -> int:
    if report.cancelled:
        return EXIT_ABORTED
    return EXIT_OK if report.ok else EXIT_PARTIAL


def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    try:
        repo_url = validate_repo_url(
            args.repo_url, args.allow_insecure_http or settings.allow_insecure_http
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        return EXIT_ABORTED

    if args.concurrency is not None:
        settings = settings.model_copy(update={"max_concurrent_transfers": args.concurrency})
    options = SyncOptions(
        include_optional=args.include_optional,
        mod_names=tuple(args.mod or ()),
        full_check=args.full_check,
        dry_run=args.dry_run,
        show_progress=not args.quiet and sys.stdout.isatty(),
    )
    cancel = threading.Event()
    with HttpTransport.from_settings(repo_url, settings) as transport:
        service = SyncService(Path(args.path).resolve(), transport, settings, cancel=cancel)
        try:
            report = service.run(options)
        except KeyboardInterrupt:
            cancel.set()
            print("Interrupted. The mod cache was not updated.")
            return EXIT_INTERRUPTED
        except (NimbleError, ValueError) as exc:
            print(f"Error: {exc}")
            return EXIT_ABORTED
    print_report(report)
    return exit_code_for(report)


def _cmd_gen_srf(args: argparse.Namespace, settings: Settings) -> int:
    store_root = Path(args.path).resolve()
    try:
        cache = regenerate_manifests(store_root, ManifestBuilder.from_settings(settings))
    except NimbleError as exc:
        print(f"Error: {exc}")
        return EXIT_ABORTED
    print(f"Generated manifests for {len(cache.mods)} mod(s) in {store_root}")
    return EXIT_OK


def _cmd_launch(args: argparse.Namespace, settings: Settings) -> int:
    store_root = Path(args.path).resolve()
    try:
        url = launch_url(store_root, ManifestBuilder.from_settings(settings))
        if args.print_url:
            print(url)
        else:
            open_url(url)
    except NimbleError as exc:
        print(f"Error: {exc}")
        return EXIT_ABORTED
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nimble",
        description="Synchronize an Arma 3 mod store with a Swifty repository",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only log warnings; no progress bars"
    )

    subparsers = parser.add_subparsers(dest="command")

    sync = subparsers.add_parser(
        "sync", help="Download, update and delete files to match a repository"
    )
    sync.add_argument("--repo-url", "-r", required=True, help="Repository base URL")
    sync.add_argument("--path", "-p", required=True, help="Local mod store directory")
    sync.add_argument(
        "--mod", "-m", action="append", help="Only synchronize this mod (repeatable)"
    )
    sync.add_argument(
        "--include-optional", action="store_true", help="Also synchronize optional mods"
    )
    sync.add_argument(
        "--full-check",
        action="store_true",
        help="Check every mod even when its checksum matches the mod cache",
    )
    sync.add_argument(
        "--dry-run", action="store_true", help="Show what would change without writing"
    )
    sync.add_argument(
        "--allow-insecure-http",
        action="store_true",
        help="Allow http:// repository URLs for non-localhost hosts",
    )
    sync.add_argument(
        "--concurrency", "-c", type=int, help="Maximum number of concurrent transfers"
    )

    gen_srf = subparsers.add_parser("gen-srf", help="Regenerate the local manifests and mod cache")
    gen_srf.add_argument("--path", "-p", required=True, help="Local mod store directory")

    launch = subparsers.add_parser("launch", help="Start the game with the synchronized mods")
    launch.add_argument("--path", "-p", required=True, help="Local mod store directory")
    launch.add_argument(
        "--print-url", action="store_true", help="Print the Steam URL instead of opening it"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_ABORTED

    settings = Settings()
    try:
        settings.validate_retry_window()
    except ValueError as exc:
        print(f"Error: {exc}")
        return EXIT_ABORTED
    _configure_logging(args.debug or settings.debug, args.quiet)
    logger.debug("Running %s", args.command)

    if args.command == "sync":
        if args.concurrency is not None and args.concurrency < 1:
            print("Error: --concurrency must be at least 1")
            return EXIT_ABORTED
        return _cmd_sync(args, settings)
    if args.command == "gen-srf":
        return _cmd_gen_srf(args, settings)
    return _cmd_launch(args, settings)


if __name__ == "__main__":
    sys.exit(main())
