"""Cancellation-aware deadlines for blocking model calls and backoff waits."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, wait
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

_POLL_INTERVAL_SECONDS = 0.05


class RequestAbortedError(RuntimeError):
    """Raised when a call stops before completion on caller request or timeout."""


class RequestCancelledError(RequestAbortedError):
    """Raised when the caller's cancellation event fires."""


class DeadlineExceededError(RequestAbortedError):
    """Raised when the per-call time budget is exhausted."""


class Deadline:
    """Time budget for one logical call, optionally tied to a cancellation event.

    Args:
        timeout_seconds: Budget measured from construction.
        cancel_event: Optional event set by the caller to abort waits.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        timeout_seconds: float,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = max(0.0, float(timeout_seconds))
        self.cancel_event = cancel_event
        self._clock = clock
        self._expires_at = clock() + self.timeout_seconds

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def check(self) -> None:
        """Raises if the caller cancelled or the budget is exhausted."""
        if self.cancelled:
            raise RequestCancelledError("Request canceled by caller.")
        if self.expired:
            raise DeadlineExceededError("Deadline of {:.1f}s exceeded.".format(self.timeout_seconds))

    def sleep(self, seconds: float) -> None:
        """Waits up to `seconds`, returning early with an error on cancel or expiry.

        Raises:
            RequestCancelledError: If the cancellation event fires while waiting.
            DeadlineExceededError: If the deadline passes before the wait ends.
        """
        self.check()
        seconds = max(0.0, float(seconds))
        if seconds == 0:
            return
        remaining = self.remaining()
        wait_for = min(seconds, remaining)
        if self.cancel_event is not None:
            if self.cancel_event.wait(wait_for):
                raise RequestCancelledError("Request canceled by caller.")
        else:
            time.sleep(wait_for)
        if seconds > remaining:
            raise DeadlineExceededError("Deadline of {:.1f}s exceeded.".format(self.timeout_seconds))

    def wait_future(self, future: "Future[T]") -> T:
        """Waits for a future within the budget and returns its result.

        The future's own exception is re-raised unchanged.
        """
        while True:
            self.check()
            timeout = self.remaining()
            if self.cancel_event is not None:
                timeout = min(timeout, _POLL_INTERVAL_SECONDS)
            done, _ = wait([future], timeout=timeout)
            if done:
                return future.result()
