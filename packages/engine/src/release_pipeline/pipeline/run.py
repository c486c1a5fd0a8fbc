from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Mapping, Optional

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import ArtifactNotFound, InvalidTransition, utc_now_iso
from release_pipeline.definition import PipelineGraph

from .types import RunStatus, StageResult

_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.idle: frozenset({RunStatus.running, RunStatus.failed}),
    RunStatus.running: frozenset(
        {RunStatus.awaiting_approval, RunStatus.succeeded, RunStatus.failed}
    ),
    RunStatus.awaiting_approval: frozenset({RunStatus.running, RunStatus.failed}),
    RunStatus.succeeded: frozenset(),
    RunStatus.failed: frozenset(),
}

StatusListener = Callable[["PipelineRun", RunStatus, RunStatus], None]


class PipelineRun:
    """
    One execution of a pipeline definition for one source revision.

    State machine:

      idle -> running -> succeeded | failed
                 ^  |
                 |  v
        awaiting_approval -> failed

    `awaiting_approval` holds while at least one gate of the active stage is
    waiting. Terminal runs never change again; a retry is a new run.
    """

    def __init__(
        self,
        *,
        run_id: str,
        revision: str,
        graph: PipelineGraph,
        on_status: StatusListener | None = None,
    ) -> None:
        self.run_id = run_id
        self.revision = revision
        self.graph = graph
        self.created_at_utc = utc_now_iso()
        self.started_at_utc: Optional[str] = None
        self.finished_at_utc: Optional[str] = None

        self._cond = threading.Condition()
        self._status = RunStatus.idle
        self._on_status = on_status
        self._current_stage: Optional[int] = None
        self._waiting: set[str] = set()
        self._stage_results: list[StageResult] = []
        self._artifacts: dict[int, ArtifactRef] = {}
        self._finalized = False

        self.failed_stage: Optional[str] = None
        self.failed_action: Optional[str] = None
        self.reason: Optional[str] = None
        self.report_path: Optional[Path] = None

    # -- state ---------------------------------------------------------

    @property
    def status(self) -> RunStatus:
        with self._cond:
            return self._status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def current_stage(self) -> Optional[str]:
        with self._cond:
            if self._current_stage is None:
                return None
            return self.graph.stages[self._current_stage].name

    @property
    def waiting_gates(self) -> list[str]:
        with self._cond:
            return sorted(self._waiting)

    @property
    def stage_results(self) -> list[StageResult]:
        with self._cond:
            return list(self._stage_results)

    def _transition(self, new: RunStatus) -> None:
        # caller holds self._cond
        old = self._status
        if new not in _TRANSITIONS[old]:
            raise InvalidTransition(
                f"Run {self.run_id}: {old.value} -> {new.value} is not allowed"
            )
        self._status = new
        if new.is_terminal:
            self.finished_at_utc = utc_now_iso()
        self._cond.notify_all()
        if self._on_status is not None:
            self._on_status(self, old, new)

    def start(self) -> None:
        with self._cond:
            self._transition(RunStatus.running)
            self.started_at_utc = utc_now_iso()

    def enter_stage(self, index: int) -> None:
        with self._cond:
            self._current_stage = index
            self._cond.notify_all()

    def record_stage(self, result: StageResult) -> None:
        with self._cond:
            self._stage_results.append(result)
            self._cond.notify_all()

    def gate_waiting(self, gate: str) -> None:
        with self._cond:
            if self._status.is_terminal:
                return
            self._waiting.add(gate)
            if self._status is RunStatus.running:
                self._transition(RunStatus.awaiting_approval)

    def gate_resolved(self, gate: str) -> None:
        with self._cond:
            self._waiting.discard(gate)
            if self._status is RunStatus.awaiting_approval and not self._waiting:
                self._transition(RunStatus.running)

    def succeed(self) -> None:
        with self._cond:
            self._transition(RunStatus.succeeded)

    def try_fail(
        self, *, stage: str | None, action: str | None, reason: str | None
    ) -> bool:
        """
        Move to failed unless the run is already terminal. Returns whether
        this call made the transition.
        """
        with self._cond:
            if self._status.is_terminal:
                return False
            self.failed_stage = stage
            self.failed_action = action
            self.reason = reason
            self._waiting.clear()
            self._transition(RunStatus.failed)
            return True

    def mark_finalized(self) -> None:
        with self._cond:
            self._finalized = True
            self._cond.notify_all()

    @property
    def finalized(self) -> bool:
        with self._cond:
            return self._finalized

    def wait(
        self,
        timeout: float | None = None,
        *,
        until: Callable[["PipelineRun"], bool] | None = None,
    ) -> RunStatus:
        """
        Block until `until(run)` holds (default: the engine finished the run,
        report included) or `timeout` elapses. Returns the status observed.
        """
        pred = until or (lambda r: r._finalized)
        with self._cond:
            self._cond.wait_for(lambda: pred(self), timeout=timeout)
            return self._status

    # -- artifacts -----------------------------------------------------

    @property
    def artifact_index(self) -> Mapping[int, ArtifactRef]:
        # Read by the run thread, which is also the only writer.
        return self._artifacts

    def add_artifact(self, index: int, ref: ArtifactRef) -> None:
        with self._cond:
            if index in self._artifacts:
                raise InvalidTransition(
                    f"Run {self.run_id}: artifact {ref.artifact_id!r} already bound"
                )
            self._artifacts[index] = ref

    def artifacts(self) -> dict[str, ArtifactRef]:
        with self._cond:
            return {
                self.graph.artifacts[i].artifact_id: ref
                for i, ref in sorted(self._artifacts.items())
            }

    def artifact(self, artifact_id: str) -> ArtifactRef:
        ref = self.artifacts().get(artifact_id)
        if ref is None:
            raise ArtifactNotFound(
                f"Artifact {artifact_id!r} was not produced in run {self.run_id}"
            )
        return ref

    def __repr__(self) -> str:
        return (
            f"PipelineRun(run_id={self.run_id!r}, revision={self.revision!r}, "
            f"status={self.status.value!r})"
        )
