import threading
import time

import pytest

from stagekit.engine.nodes import GateSpec
from stagerun.foundation.errors import (
    ApprovalRejected,
    ApprovalTimeout,
    ApproverNotAllowed,
    Cancelled,
    SlotTimeout,
    UnknownAgentLabel,
)
from stagerun.framework.cancellation import CancelToken
from stagerun.framework.gates import GateController
from stagerun.framework.slots import SlotPool


def test_slot_pool_grants_in_fifo_order():
    pool = SlotPool({"docker": 1}, poll_interval=0.01)
    pool.acquire("docker")
    order = []

    def waiter(name):
        pool.acquire("docker")
        order.append(name)
        time.sleep(0.02)
        pool.release("docker")

    threads = []
    for name in ("first", "second", "third"):
        thread = threading.Thread(target=waiter, args=(name,))
        thread.start()
        threads.append(thread)
        while pool.waiting("docker") < len(threads):
            time.sleep(0.005)

    pool.release("docker")
    for thread in threads:
        thread.join(5)

    assert order == ["first", "second", "third"]
    assert pool.in_use("docker") == 0


def test_slot_pool_timeout_and_cancel_leave_queue_clean():
    pool = SlotPool({"any": 1}, poll_interval=0.01)
    with pool.slot("any"):
        with pytest.raises(SlotTimeout, match=r"Timed out after 0.05s waiting for a 'any' slot"):
            pool.acquire("any", timeout=0.05)

        token = CancelToken()
        token.cancel("cancelled")
        with pytest.raises(Cancelled):
            pool.acquire("any", cancel=token)

        assert pool.waiting("any") == 0
    assert pool.in_use("any") == 0


def test_slot_pool_rejects_unknown_labels_and_bad_release():
    pool = SlotPool({"any": 2})
    with pytest.raises(UnknownAgentLabel, match=r"agent label 'gpu'"):
        pool.acquire("gpu")
    with pytest.raises(RuntimeError, match=r"Release without matching acquire"):
        pool.release("any")
    with pytest.raises(ValueError, match=r"positive int"):
        SlotPool({"any": 0})


def test_cancel_token_propagates_parent_reason():
    parent = CancelToken()
    child = parent.child()
    assert child.cancel("fail-fast") is True
    assert child.cancel("again") is False
    assert child.reason == "fail-fast"
    assert not parent.cancelled

    parent.cancel("run-timeout")
    assert child.reason == "run-timeout"


def test_gate_approval_by_allowed_approver():
    gates = GateController(poll_interval=0.01)
    request = gates.request("run-1", "pipeline/Deploy", GateSpec("Ship?", approvers=("alice",)))
    assert gates.pending() == [request]

    with pytest.raises(ApproverNotAllowed, match=r"mallory may not approve pipeline/Deploy"):
        gates.approve(request.request_id, "mallory")

    gates.approve(request.request_id, "alice")
    assert gates.await_decision(request, timeout=1).outcome == "approved"
    assert request.decided_by == "alice"
    assert gates.pending() == []

    with pytest.raises(ValueError, match=r"already approved"):
        gates.reject(request.request_id, "alice")


def test_gate_rejection_and_timeout():
    gates = GateController(poll_interval=0.01)
    rejected = gates.request("run-1", "pipeline/Deploy", GateSpec("Ship?"))
    threading.Timer(0.05, gates.reject, args=(rejected.request_id, "bob", "freeze")).start()

    with pytest.raises(ApprovalRejected, match=r"rejected by bob: freeze") as excinfo:
        gates.await_decision(rejected, timeout=5)
    assert excinfo.value.approver == "bob"
    assert excinfo.value.reason == "rejected"

    waiting = gates.request("run-1", "pipeline/Other", GateSpec("Ship?", timeout=0.05))
    with pytest.raises(ApprovalTimeout, match=r"No decision for pipeline/Other within 0.05s"):
        gates.await_decision(waiting)


def test_gate_wait_honours_cancellation():
    gates = GateController(poll_interval=0.01)
    request = gates.request("run-1", "pipeline/Deploy", GateSpec("Ship?"))
    token = CancelToken()
    token.cancel("cancelled")

    with pytest.raises(Cancelled):
        gates.await_decision(request, cancel=token)


def test_preset_decisions_and_listeners():
    seen = []
    gates = GateController(decisions={"pipeline/Deploy": "reject"}, poll_interval=0.01)
    gates.on_request(lambda req: seen.append((req.stage_path, req.outcome)))
    gates.on_request(lambda req: 1 / 0)

    request = gates.request("run-1", "pipeline/Deploy", GateSpec("Ship?"))

    assert seen == [("pipeline/Deploy", "rejected")]
    with pytest.raises(ApprovalRejected):
        gates.await_decision(request)

    with pytest.raises(ValueError, match=r"must be approve or reject"):
        GateController(decisions={"pipeline/Deploy": "maybe"})


def test_timed_out_and_cancelled_requests_are_closed():
    gates = GateController(poll_interval=0.01)
    waiting = gates.request("run-1", "pipeline/Deploy", GateSpec("Ship?", timeout=0.05))

    with pytest.raises(ApprovalTimeout):
        gates.await_decision(waiting)

    assert waiting.outcome == "timed-out"
    assert gates.pending() == []
    with pytest.raises(ValueError, match=r"already timed-out"):
        gates.approve(waiting.request_id, "alice")

    abandoned = gates.request("run-2", "pipeline/Deploy", GateSpec("Ship?"))
    token = CancelToken()
    token.cancel("run-timeout")
    with pytest.raises(Cancelled):
        gates.await_decision(abandoned, cancel=token)

    assert abandoned.outcome == "cancelled"
    assert abandoned.reason == "run-timeout"
    with pytest.raises(ValueError, match=r"already cancelled"):
        gates.reject(abandoned.request_id, "alice")


def test_gate_history_keeps_pending_and_drops_oldest_closed():
    gates = GateController(decisions={"pipeline/Old": "approve"}, max_history=2, poll_interval=0.01)
    old = gates.request("run-1", "pipeline/Old", GateSpec("Ship?"))
    first = gates.request("run-2", "pipeline/A", GateSpec("Ship?"))
    second = gates.request("run-3", "pipeline/B", GateSpec("Ship?"))

    with pytest.raises(KeyError, match=r"Unknown approval request"):
        gates.get(old.request_id)
    assert [req.request_id for req in gates.pending()] == [first.request_id, second.request_id]
