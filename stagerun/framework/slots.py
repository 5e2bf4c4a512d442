from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Iterator

from stagerun.foundation.errors import Cancelled, SlotTimeout, UnknownAgentLabel
from stagerun.framework.cancellation import CancelToken


class SlotPool:
    """Bounded execution slots per agent label, granted in FIFO order.

    A waiter is admitted only when it is at the head of its label's queue and
    a slot is free, so later arrivals never overtake earlier ones.
    """

    def __init__(self, capacities: Mapping[str, int], *, poll_interval: float = 0.05) -> None:
        if not capacities:
            raise ValueError("SlotPool requires at least one label")
        for label, capacity in capacities.items():
            if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
                raise ValueError(f"Slot capacity for {label} must be a positive int (got {capacity!r})")
        self._capacity = dict(capacities)
        self._in_use = {label: 0 for label in self._capacity}
        self._queues: dict[str, deque[object]] = {label: deque() for label in self._capacity}
        self._cond = threading.Condition()
        self._poll_interval = poll_interval

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(self._capacity)

    def capacity(self, label: str) -> int:
        return self._capacity[label]

    def in_use(self, label: str) -> int:
        with self._cond:
            return self._in_use[label]

    def waiting(self, label: str) -> int:
        with self._cond:
            return len(self._queues[label])

    def acquire(
        self,
        label: str,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        if label not in self._capacity:
            raise UnknownAgentLabel(
                f"No execution slots configured for agent label {label!r} "
                f"(known: {', '.join(sorted(self._capacity))})"
            )
        deadline = None if timeout is None else time.monotonic() + timeout
        ticket = object()
        with self._cond:
            queue = self._queues[label]
            queue.append(ticket)
            try:
                while not (queue[0] is ticket and self._in_use[label] < self._capacity[label]):
                    if cancel is not None and cancel.cancelled:
                        raise Cancelled(cancel.reason or "cancelled")
                    wait = self._poll_interval
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise SlotTimeout(
                                f"Timed out after {timeout:g}s waiting for a {label!r} slot"
                            )
                        wait = min(wait, remaining)
                    self._cond.wait(wait)
            except BaseException:
                queue.remove(ticket)
                self._cond.notify_all()
                raise
            queue.popleft()
            self._in_use[label] += 1
            self._cond.notify_all()

    def release(self, label: str) -> None:
        with self._cond:
            if self._in_use.get(label, 0) <= 0:
                raise RuntimeError(f"Release without matching acquire for slot label {label!r}")
            self._in_use[label] -= 1
            self._cond.notify_all()

    @contextmanager
    def slot(
        self,
        label: str,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[str]:
        self.acquire(label, timeout=timeout, cancel=cancel)
        try:
            yield label
        finally:
            self.release(label)
