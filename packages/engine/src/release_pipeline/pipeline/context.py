import threading
from dataclasses import dataclass, field
from typing import Any

from release_pipeline.artifacts import ArtifactRef, ArtifactStore
from release_pipeline.core import ILogger
from release_pipeline.definition import PipelineGraph

from .events import EventSink, EventType, make_event


@dataclass(slots=True)
class RunContext:
    """
    Context shared across stages for a single pipeline run.
    """

    run_id: str
    revision: str
    graph: PipelineGraph
    store: ArtifactStore
    logger: ILogger
    events: EventSink
    cancel_event: threading.Event = field(default_factory=threading.Event)

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def stage_logger(self, stage: str) -> ILogger:
        return self.logger.bind(stage=stage)

    def emit(self, event: EventType | str, *, stage: str | None = None, **kw: object) -> None:
        ev = make_event(event_type=event, run_id=self.run_id, stage=stage, **kw)
        self.events.emit(ev)
        # Keep event chatter at debug level to leave console logs readable.
        self.logger.debug(ev.type, event_type=ev.type, stage=stage, **kw)

    def record_artifact(self, *, stage: str, ref: ArtifactRef) -> None:
        self.emit(
            EventType.ARTIFACT_WRITTEN,
            stage=stage,
            artifact=ref.artifact_id,
            producer=ref.producer,
            bytes=ref.bytes,
            sha256=ref.sha256,
        )
