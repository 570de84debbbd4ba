"""Transfer scheduling: fetch the bytes a diff calls for, verified, with bounded concurrency.

Workers fetch into staging files next to their targets and verify digests
before a result is reported. Results flow back through futures to the
single consumer that drives the Applier, so no worker ever touches a
committed file.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from nimble.exceptions import DigestMismatchError, IoError, NimbleError, SyncCancelledError
from nimble.filesystem.atomic import create_staging_file, discard
from nimble.filesystem.paths import safe_local_path
from nimble.models.actions import ActionKind, FileAction
from nimble.services.hashing_service import digest_bytes, hex_digest, new_digest
from nimble.services.retry import RetryPolicy, run_with_retry

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from pathlib import Path

    from nimble.config import Settings
    from nimble.models.manifest import BlockDigest, FileRecord
    from nimble.transport.http_transport import Transport

logger = logging.getLogger(__name__)


class TransferMode(StrEnum):
    WHOLE = "whole"
    RANGED = "ranged"


@dataclass(frozen=True)
class Transfer:
    """Scheduled network work for one path."""

    path: str
    record: FileRecord
    mode: TransferMode
    blocks: tuple[BlockDigest, ...] = ()

    @property
    def bytes_expected(self) -> int:
        if self.mode is TransferMode.WHOLE:
            return self.record.size_bytes
        return sum(block.length for block in self.blocks)


@dataclass(frozen=True)
class StagedRange:
    """A verified block waiting in a staging file at ``staging_offset``."""

    offset: int
    length: int
    staging_offset: int


@dataclass(frozen=True)
class FetchResult:
    """Verified content for one transfer, ready for the Applier."""

    transfer: Transfer
    staged_path: Path
    ranges: tuple[StagedRange, ...] = ()

    @property
    def ranged(self) -> bool:
        return self.transfer.mode is TransferMode.RANGED

    def discard(self) -> None:
        discard(self.staged_path)


@dataclass(frozen=True)
class TransferOutcome:
    """What happened to one action: a fetch result, a forwarded delete, or an error."""

    action: FileAction
    result: FetchResult | None = None
    error: NimbleError | None = None

    @property
    def path(self) -> str:
        return self.action.path

    @property
    def ok(self) -> bool:
        return self.error is None


def plan_transfer(action: FileAction, whole_file_threshold: float) -> Transfer | None:
    """Turn an ADD or UPDATE into a Transfer; other actions need no network work.

    An UPDATE whose changed-block fraction exceeds ``whole_file_threshold``
    is fetched whole, otherwise only its changed blocks are fetched.
    """
    if action.kind is ActionKind.ADD:
        return Transfer(action.path, action.record, TransferMode.WHOLE)
    if action.kind is not ActionKind.UPDATE:
        return None
    if action.changed_fraction() > whole_file_threshold:
        return Transfer(action.path, action.record, TransferMode.WHOLE)
    blocks = tuple(
        block
        for block in (action.record.block_at(offset) for offset in action.changed_offsets)
        if block is not None
    )
    return Transfer(action.path, action.record, TransferMode.RANGED, blocks)


class TransferScheduler:
    """Execute transfers for one mod with up to ``concurrency`` workers.

    One broken file never blocks or fails its siblings: every error is
    reported as that file's outcome. Setting ``cancel`` stops new work;
    in-flight fetches stop at their next chunk and discard their staging files.
    """

    def __init__(
        self,
        transport: Transport,
        mod_dir: Path,
        *,
        remote_prefix: str = "",
        concurrency: int = 4,
        policy: RetryPolicy | None = None,
        timeout: float | None = None,
        whole_file_threshold: float = 0.5,
        cancel: threading.Event | None = None,
    ) -> None:
        self.transport = transport
        self.mod_dir = mod_dir
        self.remote_prefix = remote_prefix.strip("/")
        self.concurrency = concurrency
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.whole_file_threshold = whole_file_threshold
        self.cancel = cancel or threading.Event()

    @classmethod
    def from_settings(
        cls,
        transport: Transport,
        mod_dir: Path,
        settings: Settings,
        *,
        remote_prefix: str = "",
        cancel: threading.Event | None = None,
    ) -> TransferScheduler:
        return cls(
            transport,
            mod_dir,
            remote_prefix=remote_prefix,
            concurrency=settings.max_concurrent_transfers,
            policy=RetryPolicy.from_settings(settings),
            timeout=settings.request_timeout,
            whole_file_threshold=settings.whole_file_threshold,
            cancel=cancel,
        )

    def remote_path(self, path: str) -> str:
        return f"{self.remote_prefix}/{path}" if self.remote_prefix else path

    # Worker side ---------------------------------------------------------

    def _fetch_whole(self, transfer: Transfer, staged: Path) -> None:
        hasher = new_digest()
        size = 0
        try:
            with open(staged, "wb") as f:
                for chunk in self.transport.stream(
                    self.remote_path(transfer.path), timeout=self.timeout, cancel=self.cancel
                ):
                    hasher.update(chunk)
                    f.write(chunk)
                    size += len(chunk)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            raise IoError(f"Cannot write staging file for {transfer.path}: {exc}") from exc

        actual = hex_digest(hasher)
        if actual != transfer.record.whole_file_digest:
            raise DigestMismatchError(transfer.path, transfer.record.whole_file_digest, actual)
        if size != transfer.record.size_bytes:
            raise DigestMismatchError(
                transfer.path, f"{transfer.record.size_bytes} bytes", f"{size} bytes"
            )

    def _fetch_block(self, transfer: Transfer, block: BlockDigest) -> bytes:
        data = self.transport.get_range(
            self.remote_path(transfer.path),
            block.offset,
            block.length,
            timeout=self.timeout,
            cancel=self.cancel,
        )
        actual = digest_bytes(data)
        if actual != block.digest:
            raise DigestMismatchError(f"{transfer.path}@{block.offset}", block.digest, actual)
        return data

    def fetch(self, transfer: Transfer) -> FetchResult:
        """Fetch and verify one transfer into a staging file.

        Each network request is retried on transient failures. The staging
        file is removed on any failure, including cancellation.
        """
        target = safe_local_path(self.mod_dir, transfer.path)
        if target is None:
            raise IoError(f"Refusing to write outside the mod directory: {transfer.path}")
        staged = create_staging_file(target)
        try:
            if transfer.mode is TransferMode.WHOLE:
                run_with_retry(
                    lambda: self._fetch_whole(transfer, staged),
                    self.policy,
                    cancel=self.cancel,
                    description=f"fetch {transfer.path}",
                )
                return FetchResult(transfer, staged)

            ranges: list[StagedRange] = []
            position = 0
            with open(staged, "wb") as f:
                for block in transfer.blocks:
                    data = run_with_retry(
                        lambda block=block: self._fetch_block(transfer, block),
                        self.policy,
                        cancel=self.cancel,
                        description=f"fetch {transfer.path}@{block.offset}",
                    )
                    f.write(data)
                    ranges.append(StagedRange(block.offset, block.length, position))
                    position += len(data)
                f.flush()
                os.fsync(f.fileno())
            return FetchResult(transfer, staged, tuple(ranges))
        except OSError as exc:
            discard(staged)
            raise IoError(f"Cannot write staging file for {transfer.path}: {exc}") from exc
        except BaseException:
            discard(staged)
            raise

    def _execute(self, action: FileAction, transfer: Transfer) -> TransferOutcome:
        if self.cancel.is_set():
            return TransferOutcome(action, error=SyncCancelledError(f"{action.path} cancelled"))
        try:
            return TransferOutcome(action, result=self.fetch(transfer))
        except NimbleError as exc:
            if not isinstance(exc, SyncCancelledError):
                logger.warning("Transfer of %s failed: %s", action.path, exc)
            return TransferOutcome(action, error=exc)

    # Consumer side -------------------------------------------------------

    def run(self, actions: Iterable[tuple[str, FileAction]]) -> Iterator[TransferOutcome]:
        """Yield one outcome per ADD, UPDATE and DELETE action.

        Deletes are yielded first, untouched, for the Applier to carry out.
        Fetch outcomes follow in completion order. UNCHANGED actions are
        dropped. Closing the iterator early cancels outstanding work and
        discards staged results that were never handed out.
        """
        planned: list[tuple[FileAction, Transfer]] = []
        for _, action in actions:
            if action.kind is ActionKind.DELETE:
                yield TransferOutcome(action)
                continue
            transfer = plan_transfer(action, self.whole_file_threshold)
            if transfer is not None:
                planned.append((action, transfer))

        if not planned:
            return

        handed_out: set[Future[TransferOutcome]] = set()
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="nimble-transfer"
        ) as ex:
            futures = [ex.submit(self._execute, action, transfer) for action, transfer in planned]
            try:
                for future in as_completed(futures):
                    handed_out.add(future)
                    yield future.result()
            finally:
                if len(handed_out) < len(futures):
                    self.cancel.set()
                    for future in futures:
                        future.cancel()
                    for future in futures:
                        if future in handed_out or future.cancelled():
                            continue
                        outcome = future.result()
                        if outcome.result is not None:
                            outcome.result.discard()
