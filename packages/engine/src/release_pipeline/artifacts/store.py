from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from release_pipeline.core import (
    ArtifactNotFound,
    DuplicateArtifactWrite,
    StoreLayout,
    atomic_write_bytes,
    create_exclusive,
    read_json,
    safe_unlink,
    sha256_bytes,
    stable_json_dumps,
    utc_now_iso,
)


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    """
    A handle to an artifact produced by an action within one run.

    `sha256` is the content address; two runs producing identical bytes share
    the same blob but keep separate bindings.
    """

    run_id: str
    artifact_id: str
    producer: str
    sha256: str
    bytes: int
    created_at_utc: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class ArtifactStore(Protocol):
    def put(
        self, *, run_id: str, artifact_id: str, producer: str, data: bytes
    ) -> ArtifactRef: ...

    def get(self, ref: ArtifactRef) -> bytes: ...

    def refs(self, run_id: str) -> list[ArtifactRef]: ...

    def purge(self, ref: ArtifactRef) -> None: ...


def _make_ref(*, run_id: str, artifact_id: str, producer: str, data: bytes) -> ArtifactRef:
    return ArtifactRef(
        run_id=run_id,
        artifact_id=artifact_id,
        producer=producer,
        sha256=sha256_bytes(data),
        bytes=len(data),
        created_at_utc=utc_now_iso(),
    )


class MemoryArtifactStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bindings: dict[tuple[str, str], ArtifactRef] = {}
        self._blobs: dict[str, bytes] = {}

    def put(
        self, *, run_id: str, artifact_id: str, producer: str, data: bytes
    ) -> ArtifactRef:
        ref = _make_ref(
            run_id=run_id, artifact_id=artifact_id, producer=producer, data=bytes(data)
        )
        with self._lock:
            key = (run_id, artifact_id)
            if key in self._bindings:
                raise DuplicateArtifactWrite(
                    f"Artifact {artifact_id!r} already written in run {run_id}"
                )
            self._blobs.setdefault(ref.sha256, bytes(data))
            self._bindings[key] = ref
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        with self._lock:
            bound = self._bindings.get((ref.run_id, ref.artifact_id))
            if bound is None or bound.sha256 != ref.sha256:
                raise ArtifactNotFound(
                    f"Artifact {ref.artifact_id!r} not found in run {ref.run_id}"
                )
            return self._blobs[ref.sha256]

    def refs(self, run_id: str) -> list[ArtifactRef]:
        with self._lock:
            out = [r for (rid, _), r in self._bindings.items() if rid == run_id]
        return sorted(out, key=lambda r: (r.created_at_utc, r.artifact_id))

    def purge(self, ref: ArtifactRef) -> None:
        with self._lock:
            self._bindings.pop((ref.run_id, ref.artifact_id), None)
            if not any(r.sha256 == ref.sha256 for r in self._bindings.values()):
                self._blobs.pop(ref.sha256, None)


class FileArtifactStore:
    """
    Content-addressed artifact store on the local filesystem.

    Blobs are written atomically under their digest; the per-run binding file
    is created exclusively, which is what makes each artifact id write-once.
    """

    def __init__(self, root: Path) -> None:
        self.layout = StoreLayout(root=Path(root))

    def put(
        self, *, run_id: str, artifact_id: str, producer: str, data: bytes
    ) -> ArtifactRef:
        ref = _make_ref(
            run_id=run_id, artifact_id=artifact_id, producer=producer, data=data
        )
        binding = self.layout.binding(run_id, artifact_id)
        if binding.exists():
            raise DuplicateArtifactWrite(
                f"Artifact {artifact_id!r} already written in run {run_id}"
            )

        blob = self.layout.blob(ref.sha256)
        if not blob.exists():
            atomic_write_bytes(blob, data, mode=0o444)

        payload = stable_json_dumps(ref.to_dict(), indent=None).encode("utf-8")
        if not create_exclusive(binding, payload):
            raise DuplicateArtifactWrite(
                f"Artifact {artifact_id!r} already written in run {run_id}"
            )
        return ref

    def _load_binding(self, run_id: str, artifact_id: str) -> ArtifactRef | None:
        path = self.layout.binding(run_id, artifact_id)
        if not path.is_file():
            return None
        return ArtifactRef(**read_json(path))

    def get(self, ref: ArtifactRef) -> bytes:
        bound = self._load_binding(ref.run_id, ref.artifact_id)
        blob = self.layout.blob(ref.sha256)
        if bound is None or bound.sha256 != ref.sha256 or not blob.is_file():
            raise ArtifactNotFound(
                f"Artifact {ref.artifact_id!r} not found in run {ref.run_id}"
            )
        return blob.read_bytes()

    def refs(self, run_id: str) -> list[ArtifactRef]:
        run_dir = self.layout.run(run_id)
        if not run_dir.is_dir():
            return []
        out = [ArtifactRef(**read_json(p)) for p in run_dir.glob("*.json")]
        return sorted(out, key=lambda r: (r.created_at_utc, r.artifact_id))

    def purge(self, ref: ArtifactRef) -> None:
        """
        Drop the binding. The blob is removed only when no other binding in
        the store still points at it.
        """
        safe_unlink(self.layout.binding(ref.run_id, ref.artifact_id))
        runs_root = self.layout.runs_root()
        if runs_root.is_dir():
            for p in runs_root.glob("*/*.json"):
                if read_json(p).get("sha256") == ref.sha256:
                    return
        safe_unlink(self.layout.blob(ref.sha256))
