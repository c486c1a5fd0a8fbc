from __future__ import annotations

import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Mapping, Optional

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import ApprovalNotPending, utc_now_iso
from release_pipeline.definition import ActionNode, ApprovalConfig

from .base import ActionContext, ActionOutcome, Failure, Success

SYSTEM_ACTOR = "system"


class Decision(StrEnum):
    approve = "approve"
    reject = "reject"


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    decision: Decision
    actor: str
    comment: Optional[str] = None
    decided_at_utc: str = ""

    @property
    def rejection_reason(self) -> str:
        reason = f"Rejected by {self.actor}"
        if self.comment:
            reason += f": {self.comment}"
        return reason


GateKey = tuple[str, str]


class ApprovalBroker:
    """
    Decision channel between gates waiting inside runs and whoever decides.

    Each waiting gate owns a Future; `decide` resolves it. Waiting costs a
    blocked thread and nothing else.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: dict[GateKey, Future[ApprovalDecision]] = {}

    def open(self, run_id: str, gate: str) -> Future[ApprovalDecision]:
        fut: Future[ApprovalDecision] = Future()
        with self._lock:
            self._pending[(run_id, gate)] = fut
        return fut

    def close(self, run_id: str, gate: str) -> None:
        with self._lock:
            self._pending.pop((run_id, gate), None)

    def pending(self, run_id: str | None = None) -> list[GateKey]:
        with self._lock:
            keys = list(self._pending)
        return sorted(k for k in keys if run_id is None or k[0] == run_id)

    def decide(
        self,
        run_id: str,
        gate: str,
        decision: Decision | str,
        *,
        actor: str,
        comment: str | None = None,
    ) -> ApprovalDecision:
        with self._lock:
            fut = self._pending.pop((run_id, gate), None)
        if fut is None:
            raise ApprovalNotPending(
                f"Gate {gate!r} of run {run_id} is not waiting for a decision"
            )
        d = ApprovalDecision(
            decision=Decision(decision),
            actor=actor,
            comment=comment,
            decided_at_utc=utc_now_iso(),
        )
        fut.set_result(d)
        return d

    def reject_all(self, run_id: str, *, reason: str) -> int:
        """
        Resolve every gate of a run as rejected by the system (cancellation).
        """
        n = 0
        for rid, gate in self.pending(run_id):
            try:
                self.decide(rid, gate, Decision.reject, actor=SYSTEM_ACTOR, comment=reason)
                n += 1
            except ApprovalNotPending:
                continue
        return n


WaitHook = Callable[[str, str], None]
ResolvedHook = Callable[[str, str, Optional[ApprovalDecision]], None]


class ApprovalGate:
    """
    Executor for `approval` actions: blocks until a decision arrives.

    Waits are unbounded unless the action's `timeout_s` or the engine-wide
    `default_timeout_s` is set; an expired wait is a Failure.
    """

    def __init__(
        self,
        broker: ApprovalBroker,
        *,
        default_timeout_s: float | None = None,
        on_waiting: WaitHook | None = None,
        on_resolved: ResolvedHook | None = None,
    ) -> None:
        self.broker = broker
        self.default_timeout_s = default_timeout_s
        self._on_waiting = on_waiting
        self._on_resolved = on_resolved

    def execute(
        self,
        action: ActionNode,
        inputs: Mapping[str, ArtifactRef],
        ctx: ActionContext,
    ) -> ActionOutcome:
        cfg = action.definition.configuration
        assert isinstance(cfg, ApprovalConfig)
        timeout = cfg.timeout_s if cfg.timeout_s is not None else self.default_timeout_s

        fut = self.broker.open(ctx.run_id, action.name)
        log = ctx.logger.bind(gate=action.name)
        log.info("Awaiting approval", comment=cfg.comment, timeout_s=timeout)
        if self._on_waiting is not None:
            self._on_waiting(ctx.run_id, action.name)

        decision: ApprovalDecision | None = None
        try:
            if ctx.cancelled:
                self.broker.reject_all(ctx.run_id, reason="run cancelled")
            try:
                decision = fut.result(timeout=timeout)
            except FutureTimeout:
                self.broker.close(ctx.run_id, action.name)
                # A decision may have landed between the timeout and close().
                if not fut.done():
                    log.warning("Approval timed out", timeout_s=timeout)
                    return Failure(reason=f"Approval timed out after {timeout}s")
                decision = fut.result()
        finally:
            if self._on_resolved is not None:
                self._on_resolved(ctx.run_id, action.name, decision)

        log.info(
            "Approval decided",
            decision=decision.decision.value,
            actor=decision.actor,
            comment=decision.comment,
        )
        if decision.decision is Decision.approve:
            return Success()
        return Failure(reason=decision.rejection_reason)
