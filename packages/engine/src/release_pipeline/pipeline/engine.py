from __future__ import annotations

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from release_pipeline.artifacts import ArtifactStore, FileArtifactStore
from release_pipeline.core import (
    ApprovalNotPending,
    ILogger,
    InvalidTransition,
    RunLayout,
    RunNotFound,
    RunProvenance,
    Settings,
    configure_logging,
    format_duration_ms,
    get_logger,
    monotonic_ms,
    new_run_id,
    utc_now_iso,
)
from release_pipeline.definition import ActionNode, PipelineGraph
from release_pipeline.definition.models import NamePattern
from release_pipeline.executors import (
    ActionExecutor,
    ApprovalBroker,
    ApprovalDecision,
    ApprovalGate,
    Decision,
    ExecutorRegistry,
)

from .context import RunContext
from .events import EventSink, EventType, make_event
from .report import build_run_report
from .run import PipelineRun
from .stage import run_stage
from .types import ActionStatus, RunStatus

# Run ids become directory names under the store and run roots.
_RUN_ID_RE = re.compile(NamePattern)


@dataclass(slots=True)
class EngineConfig:
    max_parallel_actions: int = 8
    # None keeps gates waiting until decided.
    approval_timeout_s: float | None = None
    # Where events.jsonl / run_report.json go; None keeps them in memory only.
    run_root: Path | None = None

    @classmethod
    def from_settings(cls, s: Settings) -> "EngineConfig":
        return cls(
            max_parallel_actions=s.max_parallel_actions,
            approval_timeout_s=s.approval_timeout_s,
            run_root=Path(s.run_root),
        )


def default_logger() -> ILogger:
    configure_logging()
    return get_logger("pipeline")


class PipelineEngine:
    """
    Drives runs of one validated pipeline definition.

    Each trigger creates an independent PipelineRun executed on its own
    thread; stages run strictly in order and the actions of one runOrder
    group run concurrently on a per-run thread pool. Approval actions are
    served by the engine's own gate, every other kind by `executors`.
    """

    def __init__(
        self,
        *,
        graph: PipelineGraph,
        executors: ExecutorRegistry,
        store: ArtifactStore,
        cfg: EngineConfig | None = None,
        logger: ILogger | None = None,
    ) -> None:
        executors.check(graph)

        self.graph = graph
        self.executors = executors
        self.store = store
        self.cfg = cfg or EngineConfig()
        self.logger: ILogger = logger or default_logger()
        self.layout = RunLayout(self.cfg.run_root) if self.cfg.run_root else None

        self.broker = ApprovalBroker()
        self.gate = ApprovalGate(
            self.broker,
            default_timeout_s=self.cfg.approval_timeout_s,
            on_waiting=self._gate_waiting,
            on_resolved=self._gate_resolved,
        )

        self._lock = threading.Lock()
        self._runs: dict[str, PipelineRun] = {}
        self._contexts: dict[str, RunContext] = {}

    @classmethod
    def from_settings(
        cls,
        *,
        graph: PipelineGraph,
        executors: ExecutorRegistry,
        settings: Settings,
        logger: ILogger | None = None,
    ) -> "PipelineEngine":
        return cls(
            graph=graph,
            executors=executors,
            store=FileArtifactStore(settings.artifact_root),
            cfg=EngineConfig.from_settings(settings),
            logger=logger,
        )

    # -- inbound interfaces ---------------------------------------------

    def on_source_revision(
        self,
        revision: str,
        *,
        run_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> PipelineRun:
        """
        Trigger: start a new run bound to `revision` and return immediately.
        """
        rid = run_id or new_run_id()
        if not _RUN_ID_RE.match(rid):
            raise ValueError(f"Invalid run id: {rid!r}")

        with self._lock:
            if rid in self._runs:
                raise ValueError(f"Run id already used: {rid}")

            events_path = self.layout.events_jsonl(rid) if self.layout else None
            sink = EventSink(events_path, run_id=rid)
            run = PipelineRun(
                run_id=rid,
                revision=revision,
                graph=self.graph,
                on_status=self._status_listener(sink),
            )
            ctx = RunContext(
                run_id=rid,
                revision=revision,
                graph=self.graph,
                store=self.store,
                logger=self.logger.bind(run_id=rid, revision=revision),
                events=sink,
                meta=dict(meta or {}),
            )
            self._runs[rid] = run
            self._contexts[rid] = ctx

        thread = threading.Thread(
            target=self._execute_run,
            args=(run, ctx),
            name=f"pipeline-run-{rid[:8]}",
            daemon=True,
        )
        thread.start()
        return run

    def execute(
        self,
        revision: str,
        *,
        timeout: float | None = None,
        meta: dict[str, Any] | None = None,
    ) -> PipelineRun:
        """
        Trigger a run and block until it is finished (or `timeout` elapses).
        """
        run = self.on_source_revision(revision, meta=meta)
        run.wait(timeout)
        return run

    def decide(
        self,
        run_id: str,
        gate: str,
        decision: Decision | str,
        *,
        actor: str,
        comment: str | None = None,
    ) -> ApprovalDecision:
        """
        Approval channel: resolve a waiting gate of a run.
        """
        run = self.get_run(run_id)
        try:
            node = self.graph.action_by_name(gate)
        except KeyError:
            raise ApprovalNotPending(f"No approval gate named {gate!r}") from None
        if not node.is_gate:
            raise ApprovalNotPending(f"Action {gate!r} is not an approval gate")

        return self.broker.decide(run.run_id, gate, decision, actor=actor, comment=comment)

    def cancel(self, run_id: str, reason: str = "cancelled by request") -> bool:
        """
        Mark a run failed and tell in-flight actions to abort. Returns False
        when the run had already finished.
        """
        run = self.get_run(run_id)
        ctx = self._contexts[run_id]
        ctx.cancel_event.set()
        if not run.try_fail(
            stage=run.current_stage, action=None, reason=f"Cancelled: {reason}"
        ):
            return False
        ctx.emit(EventType.RUN_CANCELLED, reason=reason)
        self.broker.reject_all(run_id, reason="run cancelled")
        self.logger.warning("Run cancelled", run_id=run_id, reason=reason)
        return True

    def get_run(self, run_id: str) -> PipelineRun:
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(f"Unknown run: {run_id}")
        return run

    def runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def events(self, run_id: str) -> EventSink:
        self.get_run(run_id)
        return self._contexts[run_id].events

    # -- internals -----------------------------------------------------

    def _status_listener(self, sink: EventSink):
        def _on_status(run: PipelineRun, old: RunStatus, new: RunStatus) -> None:
            sink.emit(
                make_event(
                    event_type=EventType.RUN_STATUS,
                    run_id=run.run_id,
                    stage=run.current_stage,
                    old=old.value,
                    new=new.value,
                )
            )

        return _on_status

    def _gate_waiting(self, run_id: str, gate: str) -> None:
        run = self.get_run(run_id)
        run.gate_waiting(gate)
        self._contexts[run_id].emit(
            EventType.APPROVAL_REQUESTED, stage=run.current_stage, gate=gate
        )

    def _gate_resolved(
        self, run_id: str, gate: str, decision: ApprovalDecision | None
    ) -> None:
        run = self.get_run(run_id)
        if decision is not None:
            self._contexts[run_id].emit(
                EventType.APPROVAL_DECIDED,
                stage=run.current_stage,
                gate=gate,
                decision=decision.decision.value,
                actor=decision.actor,
                comment=decision.comment,
            )
            # Reject fails the run now, not when the gate's group drains.
            if decision.decision is Decision.reject:
                run.try_fail(
                    stage=run.current_stage,
                    action=gate,
                    reason=decision.rejection_reason,
                )
        run.gate_resolved(gate)

    def _resolve(self, action: ActionNode) -> ActionExecutor:
        if action.is_gate:
            return self.gate
        return self.executors.resolve(action.kind)

    def _execute_run(self, run: PipelineRun, ctx: RunContext) -> None:
        log = ctx.logger
        t0 = monotonic_ms()
        total = len(self.graph.stages)

        try:
            run.start()
        except InvalidTransition:
            # Cancelled before the thread got going.
            self._finalize(run, ctx, started_at=utc_now_iso(), t0=t0)
            return
        started_at = run.started_at_utc or utc_now_iso()
        ctx.emit(EventType.RUN_START, pipeline=self.graph.name, meta=dict(ctx.meta))
        log.info(
            "Pipeline starting",
            pipeline=self.graph.name,
            stages=[s.name for s in self.graph.stages],
        )

        pool = ThreadPoolExecutor(
            max_workers=self.cfg.max_parallel_actions,
            thread_name_prefix=f"run-{run.run_id[:8]}",
        )
        try:
            for idx, stage in enumerate(self.graph.stages, start=1):
                if run.is_terminal:
                    break
                run.enter_stage(stage.index)
                res = run_stage(
                    ctx=ctx,
                    stage=stage,
                    pool=pool,
                    resolve=self._resolve,
                    artifacts=run.artifact_index,
                    on_artifact=run.add_artifact,
                    index=idx,
                    total=total,
                )
                run.record_stage(res)

                if res.status is ActionStatus.failed:
                    run.try_fail(
                        stage=stage.name, action=res.failed_action, reason=res.reason
                    )
                    log.error("Stopping on failed stage", stage=stage.name)
                    break
            else:
                if not run.is_terminal:
                    run.succeed()
        except Exception as e:
            log.exception("Run aborted by internal error")
            run.try_fail(
                stage=run.current_stage,
                action=None,
                reason=f"Internal error: {type(e).__name__}: {e}",
            )
        finally:
            pool.shutdown(wait=True)
            self._finalize(run, ctx, started_at=started_at, t0=t0)

    def _finalize(
        self, run: PipelineRun, ctx: RunContext, *, started_at: str, t0: int
    ) -> None:
        duration = monotonic_ms() - t0
        try:
            events_path = self.layout.events_jsonl(run.run_id) if self.layout else None
            report = build_run_report(
                run=run,
                duration_ms=duration,
                artifacts=self.store.refs(run.run_id),
                provenance=RunProvenance(
                    run_id=run.run_id,
                    revision=run.revision,
                    definition=self.graph.name,
                    definition_fingerprint=self.graph.fingerprint,
                    started_at_utc=started_at,
                ),
                events_jsonl=str(events_path) if events_path else None,
                meta=ctx.meta,
            )
            if self.layout is not None:
                report_path = self.layout.report_json(run.run_id)
                report.write_json(report_path)
                run.report_path = report_path

            ctx.emit(
                EventType.RUN_FINISH,
                status=run.status.value,
                duration_ms=duration,
                failed_stage=run.failed_stage,
                failed_action=run.failed_action,
                reason=run.reason,
            )
            log_fn = (
                ctx.logger.info
                if run.status is RunStatus.succeeded
                else ctx.logger.error
            )
            log_fn(
                "Run complete",
                status=run.status.value,
                duration=format_duration_ms(duration),
                failed_stage=run.failed_stage,
                failed_action=run.failed_action,
                reason=run.reason,
                report=str(run.report_path) if run.report_path else None,
            )
        finally:
            run.mark_finalized()
