from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol, Union

from release_pipeline.artifacts import ArtifactRef, ArtifactStore
from release_pipeline.core import (
    ActionError,
    DefinitionError,
    ExecutorFailure,
    ILogger,
    PipelineError,
    action_error_from_exc,
)
from release_pipeline.definition import ActionNode, ExecutorKind, PipelineGraph


@dataclass(frozen=True, slots=True)
class Success:
    outputs: dict[str, ArtifactRef] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Failure:
    reason: str
    # Set when the executor raised instead of reporting a failure.
    error: Optional[ActionError] = None


ActionOutcome = Union[Success, Failure]

EmitFn = Callable[..., None]


class ActionContext:
    """
    What an executor sees of the run it works for.

    Outputs must go through `put_output`, which enforces that only the
    action's declared artifacts are written, each once.
    """

    def __init__(
        self,
        *,
        run_id: str,
        revision: str,
        stage: str,
        action: ActionNode,
        output_ids: list[str],
        store: ArtifactStore,
        logger: ILogger,
        cancel_event: threading.Event,
        emit: EmitFn | None = None,
    ) -> None:
        self.run_id = run_id
        self.revision = revision
        self.stage = stage
        self.action = action
        self.logger = logger
        self._output_ids = list(output_ids)
        self._store = store
        self._cancel_event = cancel_event
        self._emit = emit
        self._lock = threading.Lock()
        self._outputs: dict[str, ArtifactRef] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def outputs(self) -> dict[str, ArtifactRef]:
        with self._lock:
            return dict(self._outputs)

    @property
    def declared_outputs(self) -> list[str]:
        return list(self._output_ids)

    def read_input(self, ref: ArtifactRef) -> bytes:
        return self._store.get(ref)

    def put_output(self, artifact_id: str, data: bytes) -> ArtifactRef:
        if artifact_id not in self._output_ids:
            raise PipelineError(
                f"Action {self.action.name} does not declare output {artifact_id!r}"
            )
        with self._lock:
            if artifact_id in self._outputs:
                raise PipelineError(
                    f"Action {self.action.name} already wrote {artifact_id!r}"
                )
            ref = self._store.put(
                run_id=self.run_id,
                artifact_id=artifact_id,
                producer=self.action.name,
                data=data,
            )
            self._outputs[artifact_id] = ref

        if self.cancelled:
            # The run already ended; keep the blob but never hand it on.
            self.logger.warning(
                "Orphaned artifact written after cancellation",
                artifact=artifact_id,
                sha256=ref.sha256,
            )
        if self._emit is not None:
            self._emit(ref)
        return ref


class ActionExecutor(Protocol):
    def execute(
        self,
        action: ActionNode,
        inputs: Mapping[str, ArtifactRef],
        ctx: ActionContext,
    ) -> ActionOutcome: ...


class ExecutorRegistry:
    """
    Maps executor kinds to the capability that performs them.
    """

    def __init__(
        self, executors: Mapping[ExecutorKind | str, ActionExecutor] | None = None
    ) -> None:
        self._executors: dict[ExecutorKind, ActionExecutor] = {}
        for kind, ex in (executors or {}).items():
            self.register(kind, ex)

    def register(self, kind: ExecutorKind | str, executor: ActionExecutor) -> None:
        self._executors[ExecutorKind(kind)] = executor

    def resolve(self, kind: ExecutorKind) -> ActionExecutor:
        try:
            return self._executors[kind]
        except KeyError:
            raise DefinitionError(f"No executor registered for kind {kind.value!r}") from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._executors

    def check(self, graph: PipelineGraph) -> None:
        """
        Fail before any run starts when the definition uses a kind nobody serves.
        """
        missing = sorted(
            {
                a.kind.value
                for a in graph.actions
                if not a.is_gate and a.kind not in self._executors
            }
        )
        if missing:
            raise DefinitionError(f"No executor registered for kind(s): {missing}")


def invoke(
    executor: ActionExecutor,
    action: ActionNode,
    inputs: Mapping[str, ArtifactRef],
    ctx: ActionContext,
) -> ActionOutcome:
    """
    Call an executor and normalize whatever it does into an ActionOutcome.

    - ExecutorFailure becomes Failure with the message verbatim
    - any other exception becomes Failure("<ExcType>: <message>")
    - Success must cover every declared output
    """
    try:
        outcome: Any = executor.execute(action, inputs, ctx)
    except ExecutorFailure as e:
        return Failure(reason=str(e))
    except Exception as e:
        ctx.logger.exception("Executor raised", executor=type(executor).__name__)
        return Failure(
            reason=f"{type(e).__name__}: {e}", error=action_error_from_exc(e)
        )

    if isinstance(outcome, Failure):
        return outcome
    if not isinstance(outcome, Success):
        return Failure(
            reason=f"Executor returned {type(outcome).__name__}, expected Success or Failure"
        )

    produced = {**ctx.outputs, **outcome.outputs}
    missing = [o for o in ctx.declared_outputs if o not in produced]
    if missing:
        return Failure(reason=f"Executor did not produce declared output(s): {missing}")
    return Success(outputs=produced)
