"""Exception types for the synchronization core.

Convention:
- Errors scoped to a single file (``TransportError``, ``DigestMismatchError``,
  ``CorruptArchiveError``) are caught by the sync pass, recorded as a per-file
  failure and never abort sibling transfers.
- Errors scoped to the whole pass (unreadable store root, unusable repository
  description, corrupt local cache) propagate to the CLI, which reports them
  and exits non-zero before any transfer starts.
- Low-level ``OSError`` and ``httpx.HTTPError`` are translated at module
  boundaries with ``raise ... from exc`` so callers only see this taxonomy.
"""

from __future__ import annotations


class NimbleError(Exception):
    """Base class for all errors raised by the synchronization core."""


class IoError(NimbleError):
    """Raised when the local filesystem cannot be read or written."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class StorePermissionError(IoError):
    """Raised when the mod store denies access to a file or directory."""


class TransportError(NimbleError):
    """Raised when a remote fetch fails.

    ``transient`` failures (timeouts, connection resets, 5xx replies) are
    retried by the scheduler; permanent ones (not found, auth failure) are not.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.transient = transient


class FormatError(NimbleError):
    """Raised for a malformed manifest, cache file or repository description."""


class BlockSizeMismatchError(FormatError):
    """Raised when two manifests built with different block sizes are compared."""

    def __init__(self, local_block_size: int, remote_block_size: int) -> None:
        super().__init__(
            f"Block size mismatch: local manifest uses {local_block_size} bytes, "
            f"remote manifest uses {remote_block_size} bytes"
        )
        self.local_block_size = local_block_size
        self.remote_block_size = remote_block_size


class DigestMismatchError(NimbleError):
    """Raised when fetched content does not hash to the expected digest."""

    def __init__(self, path: str, expected: str, actual: str) -> None:
        super().__init__(f"Digest mismatch for {path}: expected {expected}, got {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class CorruptArchiveError(NimbleError):
    """Raised when a committed archive fails its structural integrity check."""


class SyncCancelledError(NimbleError):
    """Raised when a sync pass observes its cancellation signal."""
