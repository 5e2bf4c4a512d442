from __future__ import annotations

import threading
import time


class CancelToken:
    """Cancellation signal that propagates from a parent token to its children.

    The first `cancel` wins: its reason is the one every descendant reports.
    """

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._reason: str | None = None
        self._lock = threading.Lock()

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def cancel(self, reason: str = "cancelled") -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            return True

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        # the outermost cancellation explains everything beneath it
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        if self._event.is_set():
            return self._reason
        return None

    def wait(self, timeout: float | None = None, *, poll_interval: float = 0.05) -> bool:
        """Block until cancelled or `timeout` elapses; returns `cancelled`."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.cancelled:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            step = poll_interval if remaining is None else min(poll_interval, remaining)
            self._event.wait(step)
        return True
