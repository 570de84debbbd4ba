"""Bounded-attempt retry with exponential backoff.

The retry loop is an explicit state machine::

    IDLE -> ATTEMPTING -> SUCCESS
                       -> TRANSIENT_FAILURE -> ATTEMPTING   (while budget remains)
                       -> PERMANENT_FAILURE
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Generic, TypeVar

from nimble.exceptions import NimbleError, SyncCancelledError, TransportError

if TYPE_CHECKING:
    from collections.abc import Callable

    from nimble.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryState(StrEnum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a transient failure."""

    attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


def is_transient(exc: NimbleError) -> bool:
    return isinstance(exc, TransportError) and exc.transient


class RetryMachine(Generic[T]):
    """Run one operation under a RetryPolicy.

    ``history`` records every state entered, which keeps the control flow
    observable in tests. Waiting between attempts observes ``cancel``.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        cancel: threading.Event | None = None,
        classify: Callable[[NimbleError], bool] = is_transient,
        description: str = "operation",
    ) -> None:
        self.policy = policy
        self.cancel = cancel or threading.Event()
        self.classify = classify
        self.description = description
        self.state = RetryState.IDLE
        self.attempts = 0
        self.history: list[RetryState] = [RetryState.IDLE]

    def _enter(self, state: RetryState) -> None:
        self.state = state
        self.history.append(state)

    def run(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` until it succeeds, fails permanently or exhausts the budget.

        Only NimbleError subclasses are classified; anything else propagates
        immediately. Raises the last error on failure and SyncCancelledError
        when cancelled before or between attempts.
        """
        value: T | None = None
        error: NimbleError | None = None
        self._enter(RetryState.ATTEMPTING)
        while True:
            if self.state is RetryState.ATTEMPTING:
                if self.cancel.is_set():
                    raise SyncCancelledError(f"{self.description} cancelled")
                self.attempts += 1
                try:
                    value = operation()
                except SyncCancelledError:
                    raise
                except NimbleError as exc:
                    error = exc
                    self._enter(
                        RetryState.TRANSIENT_FAILURE
                        if self.classify(exc)
                        else RetryState.PERMANENT_FAILURE
                    )
                else:
                    self._enter(RetryState.SUCCESS)

            elif self.state is RetryState.TRANSIENT_FAILURE:
                assert error is not None
                if self.attempts >= self.policy.attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", self.description, self.attempts, error
                    )
                    raise error
                delay = self.policy.delay_for(self.attempts)
                logger.info(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    self.description,
                    self.attempts,
                    self.policy.attempts,
                    delay,
                    error,
                )
                if self.cancel.wait(delay):
                    raise SyncCancelledError(f"{self.description} cancelled")
                self._enter(RetryState.ATTEMPTING)

            elif self.state is RetryState.PERMANENT_FAILURE:
                assert error is not None
                raise error

            else:
                return value  # type: ignore[return-value]


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    cancel: threading.Event | None = None,
    description: str = "operation",
) -> T:
    return RetryMachine(policy, cancel=cancel, description=description).run(operation)
