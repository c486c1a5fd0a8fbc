from __future__ import annotations

import threading
from typing import Any, Callable, Mapping

import pytest
import structlog

from release_pipeline.artifacts import ArtifactRef, MemoryArtifactStore
from release_pipeline.definition import ActionNode, PipelineGraph, parse_definition
from release_pipeline.executors import (
    ActionContext,
    ActionOutcome,
    ExecutorRegistry,
    Success,
)


def release_definition() -> dict[str, Any]:
    """
    Source -> Test -> Build -> Publish -> DeployTest -> DeployProd (gated).
    """
    return {
        "name": "release",
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
                "name": "Test",
                "actions": [
                    {
                        "name": "UnitTest",
                        "executorKind": "build",
                        "inputs": ["src"],
                        "configuration": {"command": ["true"]},
                    }
                ],
            },
            {
                "name": "Build",
                "actions": [
                    {
                        "name": "Compile",
                        "executorKind": "build",
                        "inputs": ["src"],
                        "outputs": ["build"],
                        "configuration": {"command": ["true"]},
                    }
                ],
            },
            {
                "name": "Publish",
                "actions": [
                    {
                        "name": "Push",
                        "executorKind": "containerize",
                        "inputs": ["build"],
                        "outputs": ["image"],
                        "configuration": {
                            "command": ["true"],
                            "registry": "registry.local/app",
                        },
                    }
                ],
            },
            {
                "name": "DeployTest",
                "actions": [
                    {
                        "name": "DeployToTest",
                        "executorKind": "deploy",
                        "inputs": ["image"],
                        "configuration": {"command": ["true"], "environment": "test"},
                    }
                ],
            },
            {
                "name": "DeployProd",
                "actions": [
                    {
                        "name": "Approve",
                        "executorKind": "approval",
                        "runOrder": 1,
                    },
                    {
                        "name": "DeployToProd",
                        "executorKind": "deploy",
                        "runOrder": 2,
                        "inputs": ["image"],
                        "configuration": {"command": ["true"], "environment": "prod"},
                    },
                ],
            },
        ],
    }


Behavior = Callable[[ActionNode, Mapping[str, ArtifactRef], ActionContext], ActionOutcome]


class FakeExecutor:
    """
    Records every call and writes `<action>@<revision>` into each declared
    output unless a behavior is registered for the action.
    """

    def __init__(self, behaviors: Mapping[str, Behavior] | None = None) -> None:
        self.behaviors = dict(behaviors or {})
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str, dict[str, ArtifactRef]]] = []
        self.timeline: list[tuple[str, str]] = []

    def execute(
        self,
        action: ActionNode,
        inputs: Mapping[str, ArtifactRef],
        ctx: ActionContext,
    ) -> ActionOutcome:
        with self._lock:
            self.calls.append((ctx.run_id, action.name, dict(inputs)))
            self.timeline.append(("start", action.name))
        try:
            behavior = self.behaviors.get(action.name)
            if behavior is not None:
                return behavior(action, inputs, ctx)
            for artifact_id in ctx.declared_outputs:
                ctx.put_output(
                    artifact_id, f"{action.name}@{ctx.revision}".encode("utf-8")
                )
            return Success()
        finally:
            with self._lock:
                self.timeline.append(("end", action.name))

    def called(self, name: str) -> int:
        with self._lock:
            return sum(1 for _, n, _ in self.calls if n == name)

    def inputs_of(self, name: str) -> list[dict[str, ArtifactRef]]:
        with self._lock:
            return [i for _, n, i in self.calls if n == name]


def fake_registry(fake: FakeExecutor) -> ExecutorRegistry:
    return ExecutorRegistry(
        {"source": fake, "build": fake, "containerize": fake, "deploy": fake}
    )


@pytest.fixture
def release_raw() -> dict[str, Any]:
    return release_definition()


@pytest.fixture
def release_graph(release_raw: dict[str, Any]) -> PipelineGraph:
    return parse_definition(release_raw)


@pytest.fixture
def fake() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def registry(fake: FakeExecutor) -> ExecutorRegistry:
    return fake_registry(fake)


@pytest.fixture
def store() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def make_ctx(store: MemoryArtifactStore):
    def _make(
        graph: PipelineGraph,
        action_name: str,
        *,
        run_id: str = "run-1",
        revision: str = "abc123",
        cancel_event: threading.Event | None = None,
    ) -> ActionContext:
        node = graph.action_by_name(action_name)
        return ActionContext(
            run_id=run_id,
            revision=revision,
            stage=graph.stages[node.stage].name,
            action=node,
            output_ids=[a.artifact_id for a in graph.outputs_of(node)],
            store=store,
            logger=structlog.get_logger("tests"),
            cancel_event=cancel_event or threading.Event(),
        )

    return _make
