from __future__ import annotations

import gzip
import io
import os
import re
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Mapping

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import monotonic_ms
from release_pipeline.definition import (
    ActionNode,
    BuildConfig,
    ContainerizeConfig,
    DeployConfig,
)

from .base import ActionContext, ActionOutcome, Failure, Success

_POLL_S = 0.2
_TAIL_LINES = 20


def env_name(artifact_id: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", artifact_id.upper())


def _reset_tarinfo(ti: tarfile.TarInfo) -> tarfile.TarInfo:
    ti.uid = ti.gid = 0
    ti.uname = ti.gname = ""
    ti.mtime = 0
    return ti


def pack_dir(src: Path) -> bytes:
    """
    Pack a directory into a reproducible .tar.gz: sorted entries, zeroed
    owners and timestamps, so identical trees hash to the same artifact.
    """
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for p in sorted(src.rglob("*")):
                tar.add(
                    p,
                    arcname=p.relative_to(src).as_posix(),
                    recursive=False,
                    filter=_reset_tarinfo,
                )
    return buf.getvalue()


def unpack(data: bytes, dest: Path, *, name: str) -> Path:
    """
    Unpack an input artifact into `dest` and return the directory to work in.

    Archives holding a single top-level directory (the usual shape of a
    source tarball) resolve to that directory. Anything that is not a tar
    archive is written verbatim as `dest/<name>`.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            tar.extractall(dest, filter="data")
    except tarfile.ReadError:
        (dest / name).write_bytes(data)
        return dest

    entries = list(dest.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


def _tail(text: str, n: int = _TAIL_LINES) -> str:
    lines = [ln for ln in text.strip().splitlines() if ln.strip()]
    return "\n".join(lines[-n:])


class CommandExecutor:
    """
    Runs the configured command for build, containerize and deploy actions.

    Layout of the scratch workspace the command sees:

      $INPUT_DIR_<ARTIFACT>   one unpacked directory per input artifact
      $OUTPUT_DIR/<artifact>  filled by the command, packed into each output

    The command runs inside the first input's directory.
    """

    def __init__(
        self,
        *,
        workspace_root: Path | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.workspace_root = Path(workspace_root) if workspace_root else None
        self.base_env = dict(base_env if base_env is not None else os.environ)

    def _kind_env(self, action: ActionNode) -> dict[str, str]:
        cfg = action.definition.configuration
        if isinstance(cfg, ContainerizeConfig):
            return {"IMAGE_REPO_URI": cfg.registry, "IMAGE_TAG": cfg.tag}
        if isinstance(cfg, DeployConfig):
            return {"TARGET_ENVIRONMENT": cfg.environment}
        return {}

    def _run(
        self,
        argv: list[str],
        *,
        cwd: Path,
        env: dict[str, str],
        timeout_s: float | None,
        ctx: ActionContext,
    ) -> tuple[int | None, str, str | None]:
        """
        Returns (exit code, combined output, abort reason).
        """
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        t0 = monotonic_ms()
        while True:
            try:
                out, _ = proc.communicate(timeout=_POLL_S)
                return proc.returncode, out or "", None
            except subprocess.TimeoutExpired:
                abort = None
                if ctx.cancelled:
                    abort = "Cancelled while running"
                elif timeout_s is not None and monotonic_ms() - t0 > timeout_s * 1000:
                    abort = f"Command timed out after {timeout_s}s"
                if abort is None:
                    continue
                proc.kill()
                out, _ = proc.communicate()
                return None, out or "", abort

    def execute(
        self,
        action: ActionNode,
        inputs: Mapping[str, ArtifactRef],
        ctx: ActionContext,
    ) -> ActionOutcome:
        cfg = action.definition.configuration
        assert isinstance(cfg, (BuildConfig, ContainerizeConfig, DeployConfig))

        with tempfile.TemporaryDirectory(
            prefix=f"release-pipeline-{action.name}-",
            dir=str(self.workspace_root) if self.workspace_root else None,
        ) as tmp:
            ws = Path(tmp)
            env = {
                **self.base_env,
                "PIPELINE_RUN_ID": ctx.run_id,
                "PIPELINE_REVISION": ctx.revision,
                "PIPELINE_STAGE": ctx.stage,
                "PIPELINE_ACTION": action.name,
            }

            cwd = ws
            for i, (artifact_id, ref) in enumerate(inputs.items()):
                root = unpack(
                    ctx.read_input(ref), ws / "inputs" / artifact_id, name=artifact_id
                )
                env[f"INPUT_DIR_{env_name(artifact_id)}"] = str(root)
                if i == 0:
                    cwd = root

            out_root = ws / "outputs"
            for artifact_id in ctx.declared_outputs:
                (out_root / artifact_id).mkdir(parents=True, exist_ok=True)
            env["OUTPUT_DIR"] = str(out_root)
            env.update(self._kind_env(action))
            env.update(cfg.env)

            log = ctx.logger.bind(command=cfg.command[0])
            log.info("Running command", cwd=str(cwd), argv=cfg.command)
            try:
                code, output, abort = self._run(
                    cfg.command, cwd=cwd, env=env, timeout_s=cfg.timeout_s, ctx=ctx
                )
            except OSError as e:
                return Failure(reason=f"Could not start {cfg.command[0]!r}: {e}")

            if abort is not None:
                return Failure(reason=abort)
            if code != 0:
                tail = _tail(output)
                reason = f"Command exited with status {code}"
                return Failure(reason=f"{reason}: {tail}" if tail else reason)

            log.debug("Command finished", output_tail=_tail(output, 5))
            for artifact_id in ctx.declared_outputs:
                ctx.put_output(artifact_id, pack_dir(out_root / artifact_id))

        return Success()
