"""Sync pass: bring a local mod store in line with a remote repository.

A pass reads the repository description, then for every selected mod
fetches its manifest, diffs it against the local manifest, runs the
transfers and commits the results. Failures scoped to one file are
recorded in the report; failures scoped to the pass raise before any
transfer starts. The root mod cache is written once, at the end, and
never after a cancelled pass.
"""

from __future__ import annotations

import logging
import threading
from contextlib import closing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import ValidationError
from tqdm import tqdm

from nimble.exceptions import (
    BlockSizeMismatchError,
    FormatError,
    IoError,
    NimbleError,
    SyncCancelledError,
    TransportError,
)
from nimble.filesystem.applier import Applier
from nimble.filesystem.manifest_codec import decode_wire, load_cached_manifest
from nimble.filesystem.mod_cache import ModCache, load_mod_cache, save_mod_cache
from nimble.filesystem.paths import safe_local_path
from nimble.models.actions import ActionKind
from nimble.models.manifest import ModManifest
from nimble.schemas.repository import Repository
from nimble.services.archive_service import ArchiveValidatorRegistry, default_registry
from nimble.services.diff_service import apply_actions, diff, summarize
from nimble.services.hashing_service import BlockHasher
from nimble.services.manifest_service import ManifestBuilder
from nimble.services.retry import RetryPolicy, run_with_retry
from nimble.services.transfer_service import TransferScheduler
from nimble.transport.http_transport import HttpTransport

if TYPE_CHECKING:
    from pathlib import Path

    from nimble.config import Settings
    from nimble.models.manifest import FileRecord
    from nimble.schemas.repository import RepositoryMod
    from nimble.services.diff_service import Diff
    from nimble.transport.http_transport import Transport

logger = logging.getLogger(__name__)

REPOSITORY_DOCUMENT = "repo.json"
REMOTE_MANIFEST_NAME = "mod.srf"


@dataclass(frozen=True)
class FileFailure:
    """A file that could not be synchronized in this pass."""

    path: str
    error: str
    error_type: str

    @classmethod
    def from_error(cls, path: str, exc: NimbleError) -> FileFailure:
        return cls(path=path, error=str(exc), error_type=type(exc).__name__)


@dataclass
class ModReport:
    """Per-mod outcome counts.

    In a dry run the counts describe what the pass would do.
    """

    name: str
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    failures: list[FileFailure] = field(default_factory=list)
    error: str | None = None
    up_to_date: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failures


@dataclass
class SyncReport:
    repository: str
    mods: list[ModReport] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False
    cache: ModCache | None = None

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(mod.ok for mod in self.mods)


@dataclass(frozen=True)
class SyncOptions:
    include_optional: bool = False
    mod_names: tuple[str, ...] = ()
    full_check: bool = False
    dry_run: bool = False
    show_progress: bool = False


class SyncService:
    """Run sync passes for one mod store against one repository transport."""

    def __init__(
        self,
        store_root: Path,
        transport: Transport,
        settings: Settings,
        *,
        cancel: threading.Event | None = None,
        validators: ArchiveValidatorRegistry | None = None,
    ) -> None:
        self.store_root = store_root
        self.transport = transport
        self.settings = settings
        self.cancel = cancel or threading.Event()
        self.validators = validators or default_registry()
        self.builder = ManifestBuilder.from_settings(settings)
        self.policy = RetryPolicy.from_settings(settings)

    # Remote documents ----------------------------------------------------

    def _get_document(self, path: str) -> bytes:
        return run_with_retry(
            lambda: self.transport.get_bytes(path, timeout=self.settings.request_timeout),
            self.policy,
            cancel=self.cancel,
            description=f"fetch {path}",
        )

    def fetch_repository(self) -> Repository:
        """Fetch and parse the repository description.

        Credentials advertised by the repository are used for later
        requests unless the client already has its own.
        """
        data = self._get_document(REPOSITORY_DOCUMENT)
        try:
            repository = Repository.model_validate_json(data)
        except ValidationError as exc:
            raise FormatError(f"Invalid repository description: {exc}") from exc
        auth = repository.repo_basic_authentication
        if auth is not None and isinstance(self.transport, HttpTransport):
            if not self.transport.has_auth:
                self.transport.set_auth(auth.username, auth.password)
        logger.info(
            "Repository %s: %d required, %d optional mods",
            repository.repo_name,
            len(repository.required_mods),
            len(repository.optional_mods),
        )
        return repository

    def fetch_remote_manifest(self, mod_name: str) -> ModManifest:
        data = self._get_document(f"{mod_name}/{REMOTE_MANIFEST_NAME}")
        return decode_wire(data, self.settings.block_size)

    # Per mod -------------------------------------------------------------

    def _mod_dir(self, mod_name: str) -> Path:
        mod_dir = safe_local_path(self.store_root, mod_name)
        if mod_dir is None or mod_dir == self.store_root.resolve():
            raise IoError(f"Refusing mod directory outside the store: {mod_name}", path=mod_name)
        return mod_dir

    def load_cached_manifests(self, mod_names: list[str]) -> dict[str, ModManifest]:
        """Load the cache manifest of every named mod that has one.

        A corrupt cache manifest raises FormatError, which aborts the pass
        before any transfer starts.
        """
        cached: dict[str, ModManifest] = {}
        for name in mod_names:
            mod_dir = self._mod_dir(name)
            if not mod_dir.is_dir():
                continue
            manifest = load_cached_manifest(mod_dir, self.builder.block_size)
            if manifest is not None:
                cached[name] = manifest
        return cached

    def build_local(self, mod_name: str, cached: ModManifest | None = None) -> ModManifest:
        mod_dir = self._mod_dir(mod_name)
        if not mod_dir.is_dir():
            return ModManifest.empty(mod_name, self.builder.block_size)
        return self.builder.build(mod_dir, mod_name, cached)

    def sync_mod(
        self, mod_name: str, options: SyncOptions, cached: ModManifest | None = None
    ) -> tuple[ModReport, ModManifest | None]:
        """Synchronize one mod; return its report and, on full success, its new manifest.

        ``cached`` is the mod's cache manifest, used to skip re-hashing unchanged files.
        """
        report = ModReport(mod_name)
        mod_dir = self._mod_dir(mod_name)
        try:
            remote = self.fetch_remote_manifest(mod_name)
        except (TransportError, FormatError) as exc:
            logger.error("Cannot fetch manifest of %s: %s", mod_name, exc)
            report.error = str(exc)
            return report, None

        applier = Applier(
            mod_dir, hasher=BlockHasher(remote.block_size), validators=self.validators
        )
        try:
            if not options.dry_run:
                applier.recover_interrupted()
            local = self.build_local(mod_name, cached)
            actions = diff(local, remote)
        except (IoError, BlockSizeMismatchError) as exc:
            logger.error("Cannot compare %s: %s", mod_name, exc)
            report.error = str(exc)
            return report, None

        counts = summarize(actions)
        report.unchanged = counts[ActionKind.UNCHANGED]
        if options.dry_run:
            report.added = counts[ActionKind.ADD]
            report.updated = counts[ActionKind.UPDATE]
            report.deleted = counts[ActionKind.DELETE]
            return report, None

        try:
            mod_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create %s: %s", mod_dir, exc)
            report.error = f"Cannot create {mod_dir}: {exc}"
            return report, None

        committed = self._apply(mod_name, mod_dir, actions, applier, report, options)
        if report.failures:
            logger.warning("%s: %d files failed, keeping previous cache", mod_name, report.failed)
            return report, None

        synced = apply_actions(local, actions, remote)
        records: list[FileRecord] = []
        for path, record in synced.files.items():
            if path in committed:
                records.append(committed[path])
            else:
                previous = local.get(path)
                records.append(record.with_mtime(previous.mtime_ns if previous else None))
        synced = synced.with_files(records)
        applier.commit_manifest(synced)
        return report, synced

    def _apply(
        self,
        mod_name: str,
        mod_dir: Path,
        actions: Diff,
        applier: Applier,
        report: ModReport,
        options: SyncOptions,
    ) -> dict[str, FileRecord]:
        scheduler = TransferScheduler.from_settings(
            self.transport,
            mod_dir,
            self.settings,
            remote_prefix=mod_name,
            cancel=self.cancel,
        )
        total = sum(
            action.record.size_bytes
            for _, action in actions
            if action.kind in (ActionKind.ADD, ActionKind.UPDATE)
        )
        committed: dict[str, FileRecord] = {}
        with (
            tqdm(
                total=total,
                desc=mod_name,
                unit="B",
                unit_scale=True,
                leave=False,
                disable=not options.show_progress,
            ) as bar,
            closing(scheduler.run(actions)) as outcomes,
        ):
            for outcome in outcomes:
                action = outcome.action
                if isinstance(outcome.error, SyncCancelledError):
                    raise outcome.error
                if outcome.error is not None:
                    report.failures.append(FileFailure.from_error(action.path, outcome.error))
                    bar.update(action.record.size_bytes)
                    continue
                try:
                    if action.kind is ActionKind.DELETE:
                        applier.delete(action.path)
                        report.deleted += 1
                        continue
                    assert outcome.result is not None
                    committed[action.path] = applier.commit(outcome.result)
                except NimbleError as exc:
                    logger.warning("Cannot commit %s: %s", action.path, exc)
                    report.failures.append(FileFailure.from_error(action.path, exc))
                else:
                    if action.kind is ActionKind.ADD:
                        report.added += 1
                    else:
                        report.updated += 1
                bar.update(action.record.size_bytes)
        if self.cancel.is_set():
            raise SyncCancelledError(f"Sync of {mod_name} cancelled")
        return committed

    # Pass ----------------------------------------------------------------

    def _is_up_to_date(self, mod: RepositoryMod, cache: ModCache) -> bool:
        return (
            cache.contains(mod.checksum, mod.mod_name)
            and self._mod_dir(mod.mod_name).is_dir()
        )

    def run(self, options: SyncOptions | None = None) -> SyncReport:
        """Run one sync pass.

        Raises on pass-scoped failures: unreachable or invalid repository
        description, unreadable store root, corrupt cache. Cancellation
        (``cancel`` set, or Ctrl-C) returns a report marked cancelled and
        leaves the root cache as it was.
        """
        options = options or SyncOptions()
        if not self.store_root.is_dir():
            raise IoError(f"Mod store does not exist: {self.store_root}", path=str(self.store_root))

        try:
            repository = self.fetch_repository()
        except SyncCancelledError:
            logger.warning("Sync pass cancelled before the repository was read")
            return SyncReport(repository="", dry_run=options.dry_run, cancelled=True)
        cache = load_mod_cache(self.store_root)
        selected = repository.select_mods(options.include_optional, list(options.mod_names))
        cached = self.load_cached_manifests([mod.mod_name for mod in selected])

        report = SyncReport(repository=repository.repo_name, dry_run=options.dry_run)
        new_cache = cache
        try:
            for mod in selected:
                if self.cancel.is_set():
                    raise SyncCancelledError("Sync cancelled")
                if not options.full_check and self._is_up_to_date(mod, cache):
                    logger.info("%s is up to date", mod.mod_name)
                    report.mods.append(ModReport(mod.mod_name, up_to_date=True))
                    continue
                mod_report, synced = self.sync_mod(
                    mod.mod_name, options, cached.get(mod.mod_name)
                )
                report.mods.append(mod_report)
                if synced is not None:
                    new_cache = new_cache.with_mod(mod.checksum, mod.mod_name)
                elif not options.dry_run:
                    new_cache = new_cache.without(mod.mod_name)
        except KeyboardInterrupt:
            self.cancel.set()
            raise
        except SyncCancelledError:
            logger.warning("Sync pass cancelled; mod cache left unchanged")
            report.cancelled = True
            return report

        if not options.dry_run:
            save_mod_cache(self.store_root, new_cache)
        report.cache = new_cache
        return report
