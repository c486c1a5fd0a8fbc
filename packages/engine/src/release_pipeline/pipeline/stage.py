from __future__ import annotations

from concurrent.futures import Executor, wait
from typing import Callable, Mapping

from release_pipeline.artifacts import ArtifactRef
from release_pipeline.core import format_duration_ms, monotonic_ms, utc_now_iso
from release_pipeline.definition import ActionNode, StageNode
from release_pipeline.executors import (
    ActionContext,
    ActionExecutor,
    Failure,
    invoke,
)

from .context import RunContext
from .events import EventType
from .types import ActionResult, ActionStatus, StageResult

ExecutorResolver = Callable[[ActionNode], ActionExecutor]


def run_action(
    *,
    ctx: RunContext,
    stage: StageNode,
    action: ActionNode,
    executor: ActionExecutor,
    inputs: Mapping[str, ArtifactRef],
) -> tuple[ActionResult, dict[str, ArtifactRef]]:
    """
    Execute one action and return its result plus the artifacts it produced.
    Never raises for executor problems; those become a failed ActionResult.
    """
    log = ctx.stage_logger(stage.name).bind(action=action.name)
    t0 = monotonic_ms()
    started_at = utc_now_iso()
    ctx.emit(
        EventType.ACTION_START,
        stage=stage.name,
        action=action.name,
        kind=action.kind.value,
        run_order=action.run_order,
        inputs=list(inputs),
    )
    log.info("Action starting", kind=action.kind.value, run_order=action.run_order)

    actx = ActionContext(
        run_id=ctx.run_id,
        revision=ctx.revision,
        stage=stage.name,
        action=action,
        output_ids=[a.artifact_id for a in ctx.graph.outputs_of(action)],
        store=ctx.store,
        logger=log,
        cancel_event=ctx.cancel_event,
        emit=lambda ref: ctx.record_artifact(stage=stage.name, ref=ref),
    )
    outcome = invoke(executor, action, inputs, actx)

    duration = monotonic_ms() - t0
    finished_at = utc_now_iso()

    if isinstance(outcome, Failure):
        ctx.emit(
            EventType.ACTION_FAILED,
            stage=stage.name,
            action=action.name,
            duration_ms=duration,
            reason=outcome.reason,
        )
        log.error(
            "Action failed",
            duration=format_duration_ms(duration),
            reason=outcome.reason,
        )
        result = ActionResult(
            action=action.name,
            kind=action.kind.value,
            run_order=action.run_order,
            status=ActionStatus.failed,
            started_at_utc=started_at,
            finished_at_utc=finished_at,
            duration_ms=duration,
            outputs=sorted(actx.outputs),
            reason=outcome.reason,
            error=outcome.error,
        )
        return result, {}

    ctx.emit(
        EventType.ACTION_SUCCESS,
        stage=stage.name,
        action=action.name,
        duration_ms=duration,
        outputs=sorted(outcome.outputs),
    )
    log.info(
        "Action succeeded",
        duration=format_duration_ms(duration),
        outputs=sorted(outcome.outputs),
    )
    result = ActionResult(
        action=action.name,
        kind=action.kind.value,
        run_order=action.run_order,
        status=ActionStatus.succeeded,
        started_at_utc=started_at,
        finished_at_utc=finished_at,
        duration_ms=duration,
        outputs=sorted(outcome.outputs),
    )
    return result, dict(outcome.outputs)


def run_stage(
    *,
    ctx: RunContext,
    stage: StageNode,
    pool: Executor,
    resolve: ExecutorResolver,
    artifacts: Mapping[int, ArtifactRef],
    on_artifact: Callable[[int, ArtifactRef], None],
    index: int | None = None,
    total: int | None = None,
) -> StageResult:
    """
    Run every runOrder group of a stage in ascending order.

    Actions of a group are submitted to `pool` together and the stage waits
    for all of them before looking at the next group. The first failing group
    ends the stage; its first failure in declaration order is the one reported.

    `artifacts` maps artifact node index to ref. New outputs are handed to
    `on_artifact` only between groups, so concurrently running actions share
    nothing mutable.
    """
    log = ctx.stage_logger(stage.name)
    graph = ctx.graph

    t0 = monotonic_ms()
    started_at = utc_now_iso()
    position = f"{index}/{total}" if index is not None and total is not None else None

    ctx.emit(EventType.STAGE_START, stage=stage.name)
    log.info("Stage starting", position=position, groups=len(stage.groups))

    results: list[ActionResult] = []
    failed: ActionResult | None = None

    for run_order, members in stage.groups:
        if ctx.cancelled:
            break

        actions = [graph.action(i) for i in members]
        ctx.emit(
            EventType.GROUP_START,
            stage=stage.name,
            run_order=run_order,
            actions=[a.name for a in actions],
        )

        futures = []
        for action in actions:
            inputs = {
                graph.artifacts[i].artifact_id: artifacts[i] for i in action.inputs
            }
            futures.append(
                pool.submit(
                    run_action,
                    ctx=ctx,
                    stage=stage,
                    action=action,
                    executor=resolve(action),
                    inputs=inputs,
                )
            )
        wait(futures)

        group_results = [f.result() for f in futures]
        for (res, produced), action in zip(group_results, actions):
            results.append(res)
            for art in graph.outputs_of(action):
                if art.artifact_id in produced:
                    on_artifact(art.index, produced[art.artifact_id])

        failed = next(
            (r for r, _ in group_results if r.status is ActionStatus.failed), None
        )
        if failed is not None:
            break

    duration = monotonic_ms() - t0
    finished_at = utc_now_iso()

    if ctx.cancelled and failed is None:
        reason = "Run cancelled"
        failed_action = None
    elif failed is not None:
        reason = failed.reason
        failed_action = failed.action
    else:
        ctx.emit(EventType.STAGE_SUCCESS, stage=stage.name, duration_ms=duration)
        log.info(
            "Stage succeeded",
            position=position,
            duration=format_duration_ms(duration),
            actions=len(results),
        )
        return StageResult(
            stage=stage.name,
            status=ActionStatus.succeeded,
            started_at_utc=started_at,
            finished_at_utc=finished_at,
            duration_ms=duration,
            actions=results,
        )

    ctx.emit(
        EventType.STAGE_FAILED,
        stage=stage.name,
        duration_ms=duration,
        action=failed_action,
        reason=reason,
    )
    log.error(
        "Stage failed",
        position=position,
        duration=format_duration_ms(duration),
        action=failed_action,
        reason=reason,
    )
    return StageResult(
        stage=stage.name,
        status=ActionStatus.failed,
        started_at_utc=started_at,
        finished_at_utc=finished_at,
        duration_ms=duration,
        actions=results,
        failed_action=failed_action,
        reason=reason,
    )
