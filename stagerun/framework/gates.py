"""Manual approval gates.

A stage with a `GateSpec` files an `ApprovalRequest` and blocks until someone
on the approver allow-list decides it, the wait times out, or the run is
cancelled. Waiting holds no execution slot and no secret.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from stagekit.engine.nodes import GateSpec
from stagekit.engine.results import utc_now_iso8601
from stagerun.foundation.errors import (
    ApprovalRejected,
    ApprovalTimeout,
    ApproverNotAllowed,
    Cancelled,
)
from stagerun.framework.cancellation import CancelToken

GateOutcome = Literal["pending", "approved", "rejected", "timed-out", "cancelled"]

PRESET_APPROVER = "preset"


@dataclass
class ApprovalRequest:
    request_id: str
    run_id: str
    stage_path: str
    message: str
    approvers: tuple[str, ...]
    timeout: float | None
    created_at: str
    outcome: GateOutcome = "pending"
    decided_by: str | None = None
    reason: str | None = None
    _decided: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def decided(self) -> bool:
        return self._decided.is_set()

    def allows(self, approver: str) -> bool:
        return not self.approvers or approver in self.approvers

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "stage_path": self.stage_path,
            "message": self.message,
            "approvers": list(self.approvers),
            "outcome": self.outcome,
            "decided_by": self.decided_by,
            "reason": self.reason,
            "created_at": self.created_at,
        }


class GateController:
    def __init__(
        self,
        *,
        decisions: Mapping[str, str] | None = None,
        default_timeout: float | None = 3600.0,
        poll_interval: float = 0.05,
        max_history: int = 256,
        logger: logging.Logger | None = None,
    ) -> None:
        self._decisions = dict(decisions or {})
        for path, decision in self._decisions.items():
            if decision not in ("approve", "reject"):
                raise ValueError(f"Gate decision for {path} must be approve or reject (got {decision!r})")
        self._default_timeout = default_timeout
        self._poll_interval = poll_interval
        self._max_history = max_history
        self._logger = logger or logging.getLogger(__name__)
        self._requests: dict[str, ApprovalRequest] = {}
        self._listeners: list[Callable[[ApprovalRequest], None]] = []
        self._lock = threading.Lock()

    def on_request(self, listener: Callable[[ApprovalRequest], None]) -> None:
        if not callable(listener):
            raise TypeError("Gate listener must be callable")
        self._listeners.append(listener)

    def request(self, run_id: str, stage_path: str, gate: GateSpec) -> ApprovalRequest:
        req = ApprovalRequest(
            request_id=uuid.uuid4().hex[:12],
            run_id=run_id,
            stage_path=stage_path,
            message=gate.message,
            approvers=gate.approvers,
            timeout=gate.timeout if gate.timeout is not None else self._default_timeout,
            created_at=utc_now_iso8601(),
        )
        with self._lock:
            self._requests[req.request_id] = req
            self._evict_locked()
        self._logger.info(
            "Approval requested for %s: %s (approvers=%s)",
            stage_path,
            gate.message,
            ", ".join(gate.approvers) or "anyone",
        )

        preset = self._decisions.get(stage_path)
        if preset == "approve":
            self._decide(req, "approved", PRESET_APPROVER, None)
        elif preset == "reject":
            self._decide(req, "rejected", PRESET_APPROVER, "rejected by preset decision")

        for listener in list(self._listeners):
            try:
                listener(req)
            except Exception:
                self._logger.exception("Gate listener failed for %s", stage_path)
        return req

    def get(self, request_id: str) -> ApprovalRequest:
        with self._lock:
            try:
                return self._requests[request_id]
            except KeyError:
                raise KeyError(f"Unknown approval request: {request_id}") from None

    def pending(self) -> list[ApprovalRequest]:
        with self._lock:
            return [req for req in self._requests.values() if req.outcome == "pending"]

    def _decide(
        self, req: ApprovalRequest, outcome: GateOutcome, approver: str, reason: str | None
    ) -> None:
        with self._lock:
            if req.outcome != "pending":
                raise ValueError(
                    f"Approval request {req.request_id} for {req.stage_path} already {req.outcome}"
                )
            req.outcome = outcome
            req.decided_by = approver
            req.reason = reason
            req._decided.set()
            self._evict_locked()
        self._logger.info("Gate %s %s by %s", req.stage_path, outcome, approver)

    def _close(self, req: ApprovalRequest, outcome: GateOutcome, reason: str) -> bool:
        """Close an undecided request; False if a decision got there first."""

        with self._lock:
            if req.outcome != "pending":
                return False
            req.outcome = outcome
            req.reason = reason
            req._decided.set()
            self._evict_locked()
        self._logger.info("Gate %s %s (%s)", req.stage_path, outcome, reason)
        return True

    def _evict_locked(self) -> None:
        # drop the oldest closed requests; pending ones always stay visible
        excess = len(self._requests) - self._max_history
        if excess <= 0:
            return
        for request_id in [rid for rid, r in self._requests.items() if r.outcome != "pending"][:excess]:
            del self._requests[request_id]

    def approve(self, request_id: str, approver: str) -> ApprovalRequest:
        req = self.get(request_id)
        if not req.allows(approver):
            raise ApproverNotAllowed(f"{approver} may not approve {req.stage_path}")
        self._decide(req, "approved", approver, None)
        return req

    def reject(self, request_id: str, approver: str, reason: str | None = None) -> ApprovalRequest:
        req = self.get(request_id)
        if not req.allows(approver):
            raise ApproverNotAllowed(f"{approver} may not reject {req.stage_path}")
        self._decide(req, "rejected", approver, reason)
        return req

    def await_decision(
        self,
        req: ApprovalRequest,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> ApprovalRequest:
        """Block until `req` is decided; raises unless it was approved."""

        limit = timeout if timeout is not None else req.timeout
        deadline = None if limit is None else time.monotonic() + limit
        while not req.decided:
            if cancel is not None and cancel.cancelled:
                reason = cancel.reason or "cancelled"
                if self._close(req, "cancelled", reason):
                    raise Cancelled(reason)
                break
            wait = self._poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    message = f"No decision for {req.stage_path} within {limit:g}s"
                    if self._close(req, "timed-out", message):
                        raise ApprovalTimeout(message)
                    break
                wait = min(wait, remaining)
            req._decided.wait(wait)

        if req.outcome == "rejected":
            detail = f": {req.reason}" if req.reason else ""
            raise ApprovalRejected(
                f"{req.stage_path} rejected by {req.decided_by}{detail}", approver=req.decided_by
            )
        return req
