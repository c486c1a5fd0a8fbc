from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from release_pipeline.core import ActionError


class RunStatus(StrEnum):
    idle = "idle"
    running = "running"
    awaiting_approval = "awaiting_approval"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.succeeded, RunStatus.failed)


class ActionStatus(StrEnum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


@dataclass(slots=True)
class ActionResult:
    action: str
    kind: str
    run_order: int
    status: ActionStatus
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    outputs: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    error: Optional[ActionError] = None


@dataclass(slots=True)
class StageResult:
    stage: str
    status: ActionStatus
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    actions: list[ActionResult] = field(default_factory=list)
    failed_action: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Event:
    """
    Structured event emitted by the engine.
    """

    type: str
    ts_utc: str
    run_id: str
    stage: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
