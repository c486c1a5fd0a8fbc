from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from release_pipeline.core import ApprovalNotPending
from release_pipeline.definition import PipelineGraph, parse_definition
from release_pipeline.executors import (
    ApprovalBroker,
    ApprovalGate,
    Decision,
    Failure,
    Success,
)
from release_pipeline.executors.approval import SYSTEM_ACTOR


def _run_gate(gate: ApprovalGate, ctx, waiting: threading.Event):
    pool = ThreadPoolExecutor(max_workers=1)
    fut = pool.submit(gate.execute, ctx.action, {}, ctx)
    assert waiting.wait(5)
    return pool, fut


@pytest.fixture
def waiting() -> threading.Event:
    return threading.Event()


@pytest.fixture
def broker() -> ApprovalBroker:
    return ApprovalBroker()


@pytest.fixture
def gate(broker: ApprovalBroker, waiting: threading.Event) -> ApprovalGate:
    return ApprovalGate(broker, on_waiting=lambda run_id, name: waiting.set())


def test_approve_resumes_the_gate(
    release_graph: PipelineGraph, make_ctx, broker, gate, waiting
) -> None:
    ctx = make_ctx(release_graph, "Approve")
    pool, fut = _run_gate(gate, ctx, waiting)

    assert broker.pending("run-1") == [("run-1", "Approve")]
    d = broker.decide("run-1", "Approve", "approve", actor="alice", comment="ship it")
    assert d.decision is Decision.approve
    assert d.decided_at_utc.endswith("Z")

    assert isinstance(fut.result(timeout=5), Success)
    assert broker.pending() == []
    pool.shutdown()


def test_reject_fails_with_actor_and_comment(
    release_graph: PipelineGraph, make_ctx, broker, gate, waiting
) -> None:
    ctx = make_ctx(release_graph, "Approve")
    pool, fut = _run_gate(gate, ctx, waiting)

    broker.decide("run-1", "Approve", Decision.reject, actor="bob", comment="not today")
    assert fut.result(timeout=5) == Failure(reason="Rejected by bob: not today")
    pool.shutdown()


def test_decide_without_waiting_gate(broker: ApprovalBroker) -> None:
    with pytest.raises(ApprovalNotPending):
        broker.decide("run-1", "Approve", "approve", actor="alice")


def test_second_decision_is_refused(
    release_graph: PipelineGraph, make_ctx, broker, gate, waiting
) -> None:
    ctx = make_ctx(release_graph, "Approve")
    pool, fut = _run_gate(gate, ctx, waiting)

    broker.decide("run-1", "Approve", "approve", actor="alice")
    with pytest.raises(ApprovalNotPending):
        broker.decide("run-1", "Approve", "reject", actor="mallory")
    assert isinstance(fut.result(timeout=5), Success)
    pool.shutdown()


def test_reject_all_resolves_every_gate_of_a_run(
    release_graph: PipelineGraph, make_ctx, broker, gate, waiting
) -> None:
    ctx = make_ctx(release_graph, "Approve")
    pool, fut = _run_gate(gate, ctx, waiting)
    broker.open("run-2", "Approve")

    assert broker.reject_all("run-1", reason="run cancelled") == 1
    out = fut.result(timeout=5)
    assert out == Failure(reason=f"Rejected by {SYSTEM_ACTOR}: run cancelled")
    assert broker.pending() == [("run-2", "Approve")]
    pool.shutdown()


def test_default_timeout_fails_the_gate(
    release_graph: PipelineGraph, make_ctx, broker
) -> None:
    resolved = []
    gate = ApprovalGate(
        broker,
        default_timeout_s=0.1,
        on_resolved=lambda run_id, name, decision: resolved.append((name, decision)),
    )
    ctx = make_ctx(release_graph, "Approve")
    out = gate.execute(ctx.action, {}, ctx)
    assert out == Failure(reason="Approval timed out after 0.1s")
    assert broker.pending() == []
    assert resolved == [("Approve", None)]


def test_action_timeout_overrides_default(make_ctx, broker) -> None:
    graph = parse_definition(
        {
            "name": "p",
            "stages": [
                {
                    "name": "Gate",
                    "actions": [
                        {
                            "name": "Quick",
                            "executorKind": "approval",
                            "configuration": {"timeout_s": 0.05},
                        }
                    ],
                }
            ],
        }
    )
    gate = ApprovalGate(broker, default_timeout_s=3600)
    ctx = make_ctx(graph, "Quick")
    out = gate.execute(ctx.action, {}, ctx)
    assert out == Failure(reason="Approval timed out after 0.05s")


def test_cancelled_run_rejects_immediately(
    release_graph: PipelineGraph, make_ctx, broker
) -> None:
    cancel = threading.Event()
    cancel.set()
    gate = ApprovalGate(broker)
    ctx = make_ctx(release_graph, "Approve", cancel_event=cancel)
    out = gate.execute(ctx.action, {}, ctx)
    assert isinstance(out, Failure)
    assert out.reason.startswith(f"Rejected by {SYSTEM_ACTOR}")
