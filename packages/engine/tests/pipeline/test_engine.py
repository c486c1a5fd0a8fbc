from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import pytest
import structlog

from release_pipeline.core import (
    ApprovalNotPending,
    DefinitionError,
    ExecutorFailure,
    RunNotFound,
)
from release_pipeline.definition import PipelineGraph, parse_definition
from release_pipeline.executors import ExecutorRegistry, Failure, Success
from release_pipeline.pipeline import (
    ActionStatus,
    EngineConfig,
    EventType,
    PipelineEngine,
    PipelineRun,
    RunStatus,
)

STAGE_ACTIONS = [
    ["Checkout"],
    ["UnitTest"],
    ["Compile"],
    ["Push"],
    ["DeployToTest"],
    ["DeployToProd"],
]


def _engine(graph: PipelineGraph, registry, store, **cfg: Any) -> PipelineEngine:
    return PipelineEngine(
        graph=graph,
        executors=registry,
        store=store,
        cfg=EngineConfig(**cfg),
        logger=structlog.get_logger("tests"),
    )


def _ungated(raw: dict[str, Any]) -> PipelineGraph:
    raw["stages"].pop()
    return parse_definition(raw)


def _await_gate(run: PipelineRun) -> None:
    status = run.wait(
        timeout=5,
        until=lambda r: r.finalized or r.status is RunStatus.awaiting_approval,
    )
    assert status is RunStatus.awaiting_approval


def _position(timeline: list[tuple[str, str]]) -> dict[tuple[str, str], int]:
    return {entry: i for i, entry in enumerate(timeline)}


def test_stages_run_strictly_in_declared_order(
    release_graph, registry, store, fake
) -> None:
    engine = _engine(release_graph, registry, store)
    run = engine.on_source_revision("rev1")
    _await_gate(run)
    engine.decide(run.run_id, "Approve", "approve", actor="alice")
    assert run.wait(timeout=5) is RunStatus.succeeded

    pos = _position(fake.timeline)
    for earlier, later in zip(STAGE_ACTIONS, STAGE_ACTIONS[1:]):
        for a in earlier:
            for b in later:
                assert pos[("end", a)] < pos[("start", b)]
    assert [r.stage for r in run.stage_results] == [
        "Source", "Test", "Build", "Publish", "DeployTest", "DeployProd",
    ]


def _grouped_definition() -> dict[str, Any]:
    return {
        "name": "grouped",
        "stages": [
            {
                "name": "Source",
                "actions": [
                    {
                        "name": "Checkout",
                        "executorKind": "source",
                        "outputs": ["src"],
                        "configuration": {"repository": "acme/app"},
                    }
                ],
            },
            {
                "name": "Checks",
                "actions": [
                    {
                        "name": name,
                        "executorKind": "build",
                        "runOrder": ro,
                        "inputs": ["src"],
                        "configuration": {"command": ["true"]},
                    }
                    for name, ro in (("Lint", 1), ("Unit", 1), ("Integration", 2))
                ],
            },
        ],
    }


def test_run_order_group_runs_concurrently_before_next_group(
    registry, store, fake
) -> None:
    barrier = threading.Barrier(2, timeout=5)

    def together(action, inputs, ctx):
        barrier.wait()
        return Success()

    fake.behaviors.update({"Lint": together, "Unit": together})
    engine = _engine(parse_definition(_grouped_definition()), registry, store)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.succeeded
    pos = _position(fake.timeline)
    for a in ("Lint", "Unit"):
        assert pos[("end", a)] < pos[("start", "Integration")]


def test_failed_group_stops_later_groups(registry, store, fake) -> None:
    fake.behaviors["Unit"] = lambda action, inputs, ctx: Failure("flaky suite")
    engine = _engine(parse_definition(_grouped_definition()), registry, store)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.failed
    assert (run.failed_stage, run.failed_action) == ("Checks", "Unit")
    assert run.reason == "flaky suite"
    assert fake.called("Lint") == 1
    assert fake.called("Integration") == 0


def test_two_triggers_make_independent_runs(release_raw, registry, store, fake) -> None:
    engine = _engine(_ungated(release_raw), registry, store)
    first = engine.execute("rev1", timeout=10)
    second = engine.execute("rev1", timeout=10)

    assert first.run_id != second.run_id
    assert first.status is second.status is RunStatus.succeeded
    assert first.artifact("src") != second.artifact("src")
    assert first.artifact("src").sha256 == second.artifact("src").sha256
    assert {r.artifact_id for r in store.refs(first.run_id)} == {"src", "build", "image"}
    assert fake.called("Checkout") == 2
    assert {r.run_id for r in engine.runs()} == {first.run_id, second.run_id}
    assert engine.events(first.run_id) is not engine.events(second.run_id)


def test_failing_test_stage_halts_the_run(release_graph, registry, store, fake) -> None:
    fake.behaviors["UnitTest"] = lambda action, inputs, ctx: Failure("3 tests failed")
    engine = _engine(release_graph, registry, store)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.failed
    assert run.failed_stage == "Test"
    assert run.failed_action == "UnitTest"
    assert run.reason == "3 tests failed"
    for name in ("Compile", "Push", "DeployToTest", "DeployToProd"):
        assert fake.called(name) == 0
    assert [r.stage for r in run.stage_results] == ["Source", "Test"]


def test_publish_failure_keeps_reason_and_earlier_artifacts(
    release_graph, registry, store, fake
) -> None:
    def denied(action, inputs, ctx):
        raise ExecutorFailure("push denied")

    fake.behaviors["Push"] = denied
    engine = _engine(release_graph, registry, store)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.failed
    assert run.failed_stage == "Publish"
    assert run.reason == "push denied"
    assert store.get(run.artifact("src")) == b"Checkout@rev1"
    assert fake.called("DeployToTest") == 0

    publish = run.stage_results[-1]
    assert publish.status is ActionStatus.failed
    assert publish.actions[0].reason == "push denied"


def test_approve_deploys_the_tested_image_once(
    release_graph, registry, store, fake
) -> None:
    engine = _engine(release_graph, registry, store)
    run = engine.on_source_revision("rev1")
    _await_gate(run)

    assert run.waiting_gates == ["Approve"]
    assert run.current_stage == "DeployProd"
    assert fake.called("DeployToProd") == 0

    d = engine.decide(run.run_id, "Approve", "approve", actor="alice", comment="lgtm")
    assert d.actor == "alice"
    assert run.wait(timeout=5) is RunStatus.succeeded

    assert fake.called("Push") == 1
    assert fake.called("DeployToProd") == 1
    image = run.artifact("image")
    assert fake.inputs_of("DeployToProd") == [{"image": image}]
    assert fake.inputs_of("DeployToTest") == [{"image": image}]

    types = engine.events(run.run_id).types()
    assert EventType.APPROVAL_REQUESTED.value in types
    assert EventType.APPROVAL_DECIDED.value in types
    assert types[-1] == EventType.RUN_FINISH.value


def test_reject_never_deploys(release_graph, registry, store, fake) -> None:
    engine = _engine(release_graph, registry, store)
    run = engine.on_source_revision("rev1")
    _await_gate(run)

    engine.decide(run.run_id, "Approve", "reject", actor="bob", comment="not today")
    assert run.wait(timeout=5) is RunStatus.failed

    assert run.failed_stage == "DeployProd"
    assert run.failed_action == "Approve"
    assert run.reason == "Rejected by bob: not today"
    assert fake.called("DeployToProd") == 0
    # retained, never promoted
    assert store.get(run.artifact("image")) == b"Push@rev1"


@pytest.mark.parametrize(
    "decision, status, prod_calls",
    [("approve", RunStatus.succeeded, 1), ("reject", RunStatus.failed, 0)],
)
def test_gate_beside_deploy_test(
    release_raw, registry, store, fake, decision, status, prod_calls
) -> None:
    stages = release_raw["stages"]
    deploy_test = stages.pop(4)["actions"][0]
    stages[-1]["actions"].insert(0, {**deploy_test, "runOrder": 1})
    engine = _engine(parse_definition(release_raw), registry, store)

    run = engine.on_source_revision("rev1")
    _await_gate(run)
    engine.decide(run.run_id, "Approve", decision, actor="carol")

    assert run.wait(timeout=5) is status
    assert fake.called("DeployToTest") == 1
    assert fake.called("DeployToProd") == prod_calls


def test_reject_fails_run_while_sibling_still_deploys(
    release_raw, registry, store, fake
) -> None:
    stages = release_raw["stages"]
    deploy_test = stages.pop(4)["actions"][0]
    stages[-1]["actions"].insert(0, {**deploy_test, "runOrder": 1})
    release = threading.Event()

    def slow_deploy(action, inputs, ctx):
        assert release.wait(5)
        return Success()

    fake.behaviors["DeployToTest"] = slow_deploy
    engine = _engine(parse_definition(release_raw), registry, store)
    run = engine.on_source_revision("rev1")
    _await_gate(run)

    engine.decide(run.run_id, "Approve", "reject", actor="bob")
    status = run.wait(timeout=5, until=lambda r: r.status is RunStatus.failed)
    try:
        assert status is RunStatus.failed
        assert not run.finalized
        assert ("end", "DeployToTest") not in fake.timeline
        assert (run.failed_stage, run.failed_action) == ("DeployProd", "Approve")
        assert run.reason == "Rejected by bob"
    finally:
        release.set()

    assert run.wait(timeout=5) is RunStatus.failed
    assert run.failed_action == "Approve"
    assert run.reason == "Rejected by bob"
    assert fake.called("DeployToProd") == 0


def test_cancel_during_action_orphans_late_output(
    release_raw, registry, store, fake
) -> None:
    started = threading.Event()
    release = threading.Event()
    seen: list[bool] = []

    def slow_compile(action, inputs, ctx):
        started.set()
        assert release.wait(5)
        seen.append(ctx.cancelled)
        ctx.put_output("build", b"late build")
        return Success()

    fake.behaviors["Compile"] = slow_compile
    engine = _engine(_ungated(release_raw), registry, store)
    run = engine.on_source_revision("rev1")
    assert started.wait(5)

    assert engine.cancel(run.run_id, "stop") is True
    release.set()

    assert run.wait(timeout=5) is RunStatus.failed
    assert run.reason == "Cancelled: stop"
    assert run.failed_stage == "Build"
    assert seen == [True]
    for name in ("Push", "DeployToTest"):
        assert fake.called(name) == 0
    assert {r.artifact_id for r in store.refs(run.run_id)} == {"src", "build"}


def test_cancel_while_awaiting_approval(release_graph, registry, store, fake) -> None:
    engine = _engine(release_graph, registry, store)
    run = engine.on_source_revision("rev1")
    _await_gate(run)

    assert engine.cancel(run.run_id, "operator abort") is True
    assert run.wait(timeout=5) is RunStatus.failed
    assert run.reason == "Cancelled: operator abort"
    assert run.failed_stage == "DeployProd"
    assert fake.called("DeployToProd") == 0
    assert engine.cancel(run.run_id) is False
    assert EventType.RUN_CANCELLED.value in engine.events(run.run_id).types()


def test_approval_timeout_fails_the_run(release_graph, registry, store, fake) -> None:
    engine = _engine(release_graph, registry, store, approval_timeout_s=0.1)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.failed
    assert run.failed_action == "Approve"
    assert run.reason == "Approval timed out after 0.1s"
    assert fake.called("DeployToProd") == 0


def test_unexpected_exception_is_recorded(release_graph, registry, store, fake) -> None:
    def boom(action, inputs, ctx):
        raise RuntimeError("disk on fire")

    fake.behaviors["Compile"] = boom
    engine = _engine(release_graph, registry, store)
    run = engine.execute("rev1", timeout=10)

    assert run.status is RunStatus.failed
    assert run.reason == "RuntimeError: disk on fire"
    err = run.stage_results[-1].actions[0].error
    assert err is not None and err.exc_type == "RuntimeError"


def test_report_and_event_log_are_written(
    tmp_path: Path, release_raw, registry, store
) -> None:
    graph = _ungated(release_raw)
    engine = _engine(graph, registry, store, run_root=tmp_path)
    run = engine.execute("rev1", timeout=10, meta={"trigger": "push"})

    assert run.report_path == tmp_path / run.run_id / "run_report.json"
    report = json.loads(run.report_path.read_text())
    assert report["status"] == "succeeded"
    assert report["revision"] == "rev1"
    assert report["meta"] == {"trigger": "push"}
    assert len(report["stages"]) == 5
    assert {a["artifact_id"] for a in report["artifacts"]} == {"src", "build", "image"}
    assert report["provenance"]["definition_fingerprint"] == graph.fingerprint

    lines = (tmp_path / run.run_id / "events.jsonl").read_text().splitlines()
    types = [json.loads(ln)["type"] for ln in lines]
    assert types[0] == EventType.RUN_ENV.value
    assert types[-1] == EventType.RUN_FINISH.value
    assert types.count(EventType.ARTIFACT_WRITTEN.value) == 3


def test_lookup_and_decision_errors(release_raw, release_graph, registry, store) -> None:
    engine = _engine(release_graph, registry, store)
    with pytest.raises(RunNotFound):
        engine.get_run("nope")
    with pytest.raises(RunNotFound):
        engine.decide("nope", "Approve", "approve", actor="alice")

    run = engine.on_source_revision("rev1")
    with pytest.raises(ApprovalNotPending, match="not an approval gate"):
        engine.decide(run.run_id, "Push", "approve", actor="alice")
    with pytest.raises(ApprovalNotPending, match="No approval gate"):
        engine.decide(run.run_id, "Missing", "approve", actor="alice")

    _await_gate(run)
    engine.decide(run.run_id, "Approve", "approve", actor="alice")
    run.wait(timeout=5)
    with pytest.raises(ApprovalNotPending):
        engine.decide(run.run_id, "Approve", "approve", actor="alice")


def test_run_ids_are_unique(release_raw, registry, store) -> None:
    engine = _engine(_ungated(release_raw), registry, store)
    run = engine.on_source_revision("rev1", run_id="fixed")
    with pytest.raises(ValueError):
        engine.on_source_revision("rev2", run_id="fixed")
    assert run.wait(timeout=10) is RunStatus.succeeded


def test_concurrent_triggers_with_same_run_id(release_raw, registry, store) -> None:
    engine = _engine(_ungated(release_raw), registry, store)
    barrier = threading.Barrier(8, timeout=5)
    outcomes: list[str] = []
    lock = threading.Lock()

    def trigger() -> None:
        barrier.wait()
        try:
            engine.on_source_revision("rev1", run_id="shared")
            result = "started"
        except ValueError:
            result = "refused"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=trigger) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert sorted(outcomes) == ["refused"] * 7 + ["started"]
    assert engine.get_run("shared").wait(timeout=10) is RunStatus.succeeded


@pytest.mark.parametrize("run_id", ["../escape", "a/b", ".hidden", "run id"])
def test_run_id_must_be_a_plain_name(release_graph, registry, store, run_id) -> None:
    engine = _engine(release_graph, registry, store)
    with pytest.raises(ValueError, match="Invalid run id"):
        engine.on_source_revision("rev1", run_id=run_id)
    assert engine.runs() == []


def test_missing_executor_kind_is_rejected_up_front(release_graph, store, fake) -> None:
    with pytest.raises(DefinitionError, match="deploy"):
        _engine(release_graph, ExecutorRegistry({"source": fake, "build": fake}), store)
