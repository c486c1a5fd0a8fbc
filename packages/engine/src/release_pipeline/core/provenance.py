from __future__ import annotations

import os
import platform
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


def new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, slots=True)
class RunProvenance:
    """
    Where and against what a pipeline run executed.
    """

    run_id: str
    revision: str
    definition: str
    definition_fingerprint: str
    started_at_utc: str
    hostname: str = field(default_factory=platform.node)
    pid: int = field(default_factory=os.getpid)
    python: str = field(default_factory=lambda: platform.python_version())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
