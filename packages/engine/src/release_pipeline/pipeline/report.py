from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import RunProvenance, atomic_write_json

from .run import PipelineRun
from .types import StageResult


@dataclass(slots=True)
class RunReport:
    run_id: str
    pipeline: str
    revision: str
    status: str
    started_at_utc: Optional[str]
    finished_at_utc: Optional[str]
    duration_ms: int

    failed_stage: Optional[str] = None
    failed_action: Optional[str] = None
    reason: Optional[str] = None

    stages: list[StageResult] = field(default_factory=list)
    # Everything the store holds for the run, including outputs of failed
    # or cancelled actions that were never handed on.
    artifacts: list[ArtifactRef] = field(default_factory=list)
    provenance: Optional[RunProvenance] = None
    events_jsonl: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())


def build_run_report(
    *,
    run: PipelineRun,
    duration_ms: int,
    artifacts: list[ArtifactRef],
    provenance: RunProvenance | None,
    events_jsonl: str | None,
    meta: dict[str, Any] | None = None,
) -> RunReport:
    return RunReport(
        run_id=run.run_id,
        pipeline=run.graph.name,
        revision=run.revision,
        status=run.status.value,
        started_at_utc=run.started_at_utc,
        finished_at_utc=run.finished_at_utc,
        duration_ms=duration_ms,
        failed_stage=run.failed_stage,
        failed_action=run.failed_action,
        reason=run.reason,
        stages=run.stage_results,
        artifacts=artifacts,
        provenance=provenance,
        events_jsonl=events_jsonl,
        meta=meta or {},
    )
