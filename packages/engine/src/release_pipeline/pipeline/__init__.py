from .context import RunContext
from .engine import EngineConfig, PipelineEngine
from .events import EventSink, EventType
from .report import RunReport
from .run import PipelineRun
from .types import ActionResult, ActionStatus, RunStatus, StageResult

__all__ = [
    "ActionResult",
    "ActionStatus",
    "EngineConfig",
    "EventSink",
    "EventType",
    "PipelineEngine",
    "PipelineRun",
    "RunContext",
    "RunReport",
    "RunStatus",
    "StageResult",
]
