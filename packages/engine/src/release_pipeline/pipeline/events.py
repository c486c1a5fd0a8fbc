from __future__ import annotations

import json
import os
import socket
import threading
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from release_pipeline.core import utc_now_iso

from .types import Event


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_STATUS = "run.status"
    RUN_CANCELLED = "run.cancelled"
    RUN_FINISH = "run.finish"

    STAGE_START = "stage.start"
    STAGE_SUCCESS = "stage.success"
    STAGE_FAILED = "stage.failed"

    GROUP_START = "group.start"

    ACTION_START = "action.start"
    ACTION_SUCCESS = "action.success"
    ACTION_FAILED = "action.failed"

    ARTIFACT_WRITTEN = "artifact.written"

    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_DECIDED = "approval.decided"


class EventSink:
    """
    Per-run event log. Events are kept in memory and, when a path is given,
    appended to a JSON-lines file as they happen.
    """

    def __init__(self, path: Path | None = None, *, run_id: str = "__init__") -> None:
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._events: list[Event] = []

        self.emit(
            Event(
                type=EventType.RUN_ENV.value,
                ts_utc=utc_now_iso(),
                run_id=run_id,
                data={
                    "hostname": socket.gethostname(),
                    "pid": os.getpid(),
                    "cwd": str(Path.cwd()),
                },
            )
        )

    def emit(self, event: Event) -> None:
        line = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock:
            self._events.append(event)
            if self.path is not None:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.write("\n")

    @property
    def events(self) -> list[Event]:
        with self._lock:
            return list(self._events)

    def types(self) -> list[str]:
        return [e.type for e in self.events]


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    stage: Optional[str] = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(
        type=type_value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        stage=stage,
        data=dict(data),
    )
