from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class StoreLayout:
    """
    Canonical path layout for the file-backed artifact store:

      {root}/blobs/sha256/{digest[:2]}/{digest}
      {root}/runs/{run_id}/{artifact_id}.json
    """

    root: Path

    def blobs_root(self) -> Path:
        return self.root / "blobs" / "sha256"

    def blob(self, sha256: str) -> Path:
        return self.blobs_root() / sha256[:2] / sha256

    def runs_root(self) -> Path:
        return self.root / "runs"

    def run(self, run_id: str) -> Path:
        return self.runs_root() / run_id

    def binding(self, run_id: str, artifact_id: str) -> Path:
        return self.run(run_id) / f"{artifact_id}.json"


@dataclass(frozen=True, slots=True)
class RunLayout:
    """
    Per-run diagnostics:

      {root}/{run_id}/events.jsonl
      {root}/{run_id}/run_report.json
    """

    root: Path

    def run(self, run_id: str) -> Path:
        return self.root / run_id

    def events_jsonl(self, run_id: str) -> Path:
        return self.run(run_id) / "events.jsonl"

    def report_json(self, run_id: str) -> Path:
        return self.run(run_id) / "run_report.json"
