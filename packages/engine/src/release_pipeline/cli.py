from __future__ import annotations

import argparse
import getpass
import json
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from release_pipeline.core import (
    ApprovalNotPending,
    DefinitionError,
    bind,
    clear_bindings,
    configure_logging,
    get_logger,
    load_settings,
    new_run_id,
)
from release_pipeline.definition import (
    PipelineGraph,
    load_definition,
    schema_for_pipeline_definition,
)
from release_pipeline.executors import Decision, default_registry
from release_pipeline.pipeline import PipelineEngine, PipelineRun, RunStatus

console = Console()


@dataclass(frozen=True, slots=True)
class _CommonArgs:
    cmd: str
    definition: Path | None


def _add_definition_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--definition",
        default=None,
        type=Path,
        help=(
            "Pipeline definition JSON. "
            "If omitted: uses RELEASE_PIPELINE_DEFINITION or ./pipeline.json."
        ),
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="release-pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("validate", help="Validate a definition and print its plan")
    _add_definition_arg(sp)

    sub.add_parser("schema", help="Print the definition JSON schema")

    sp = sub.add_parser("run", help="Run the pipeline for one source revision")
    _add_definition_arg(sp)
    sp.add_argument("--revision", required=True, help="Source revision to build")
    sp.add_argument(
        "--gates",
        choices=("prompt", "approve", "reject"),
        default="prompt",
        help="How approval gates are answered: prompt (default), approve or reject.",
    )
    sp.add_argument(
        "--actor",
        default=None,
        help="Name recorded with approval decisions (default: current user).",
    )
    return p


def _common(args: argparse.Namespace) -> _CommonArgs:
    definition = getattr(args, "definition", None)
    return _CommonArgs(cmd=str(args.cmd), definition=definition)


def _plan_table(graph: PipelineGraph) -> Table:
    tbl = Table(title=f"Pipeline {graph.name}", show_header=True)
    tbl.add_column("stage")
    tbl.add_column("runOrder", justify="right")
    tbl.add_column("action")
    tbl.add_column("kind")
    tbl.add_column("inputs")
    tbl.add_column("outputs")
    for st in graph.stages:
        for run_order, members in st.groups:
            for idx in members:
                a = graph.action(idx)
                tbl.add_row(
                    st.name,
                    str(run_order),
                    a.name,
                    a.kind.value,
                    ", ".join(x.artifact_id for x in graph.inputs_of(a)) or "-",
                    ", ".join(x.artifact_id for x in graph.outputs_of(a)) or "-",
                )
    return tbl


def _cmd_validate(common: _CommonArgs) -> int:
    graph = load_definition(common.definition)
    console.print(_plan_table(graph))
    for art in graph.unconsumed_artifacts():
        console.print(f"[yellow]warning[/yellow] artifact {art!r} is never consumed")
    console.print(f"[green]ok[/green] fingerprint={graph.fingerprint}")
    return 0


def _answer_gates(
    engine: PipelineEngine, run: PipelineRun, *, mode: str, actor: str
) -> set[str]:
    answered: set[str] = set()
    for gate in run.waiting_gates:
        if mode == "prompt":
            approved = Confirm.ask(
                f"Approve [bold]{gate}[/] for revision {run.revision}?",
                console=console,
            )
        else:
            approved = mode == "approve"
        try:
            engine.decide(
                run.run_id,
                gate,
                Decision.approve if approved else Decision.reject,
                actor=actor,
                comment=f"via cli ({mode})",
            )
        except ApprovalNotPending as e:
            console.print(f"[yellow]skipped[/yellow] {e}")
        answered.add(gate)
    return answered


def _cmd_run(common: _CommonArgs, args: argparse.Namespace) -> int:
    s = load_settings()
    log = get_logger("release_pipeline")

    graph = load_definition(common.definition)
    run_id = new_run_id()
    bind(run_id=run_id, command=common.cmd, revision=args.revision)

    engine = PipelineEngine.from_settings(
        graph=graph, executors=default_registry(), settings=s, logger=log
    )

    console.print(
        Panel.fit(
            Text(
                f"release-pipeline - {graph.name}\n"
                f"run_id={run_id}\nrevision={args.revision}",
                style="bold",
            ),
            title="Run",
        )
    )

    run = engine.on_source_revision(args.revision, run_id=run_id)
    actor = args.actor or getpass.getuser()
    try:
        while True:
            run.wait(
                until=lambda r: r.finalized or r.status is RunStatus.awaiting_approval
            )
            if run.finalized:
                break
            answered = _answer_gates(engine, run, mode=args.gates, actor=actor)
            run.wait(
                until=lambda r: r.finalized or not (set(r.waiting_gates) & answered)
            )
    finally:
        clear_bindings()

    tbl = Table(title="Result", show_header=False, box=None)
    ok = run.status is RunStatus.succeeded
    tbl.add_row("status", "[green]succeeded[/green]" if ok else "[red]failed[/red]")
    if not ok:
        tbl.add_row("stage", str(run.failed_stage))
        tbl.add_row("action", str(run.failed_action))
        tbl.add_row("reason", str(run.reason))
    tbl.add_row("report", str(run.report_path))
    console.print(tbl)

    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    common = _common(args)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format)

    try:
        if common.cmd == "schema":
            console.print_json(json.dumps(schema_for_pipeline_definition()))
            return 0
        if common.cmd == "validate":
            return _cmd_validate(common)
        return _cmd_run(common, args)
    except DefinitionError as e:
        console.print(f"[red]invalid definition[/red] {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
