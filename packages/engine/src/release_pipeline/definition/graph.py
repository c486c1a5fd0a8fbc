from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter

from release_pipeline.core import (
    DefinitionError,
    DuplicateArtifactProducer,
    UndeclaredArtifact,
    definition_fingerprint,
    stable_json_dumps,
)

from .models import ActionDef, ExecutorKind, PipelineDef


@dataclass(frozen=True, slots=True)
class ActionNode:
    index: int
    stage: int
    name: str
    kind: ExecutorKind
    run_order: int
    inputs: tuple[int, ...]
    outputs: tuple[int, ...]
    definition: ActionDef

    @property
    def is_gate(self) -> bool:
        return self.kind is ExecutorKind.approval


@dataclass(frozen=True, slots=True)
class ArtifactNode:
    index: int
    artifact_id: str
    producer: int
    consumers: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class StageNode:
    index: int
    name: str
    actions: tuple[int, ...]
    # (run_order, action indices) in ascending run_order
    groups: tuple[tuple[int, tuple[int, ...]], ...]


class PipelineGraph:
    """
    Validated, immutable view of a pipeline definition.

    Stages, actions and artifacts are nodes addressed by integer index; edges
    (producer -> artifact -> consumers) are resolved once here, so nothing at
    run time looks artifacts up by name. Construction fails with a
    DefinitionError subclass for any wiring problem.
    """

    def __init__(
        self,
        *,
        definition: PipelineDef,
        stages: tuple[StageNode, ...],
        actions: tuple[ActionNode, ...],
        artifacts: tuple[ArtifactNode, ...],
    ) -> None:
        self.definition = definition
        self.name = definition.name
        self.stages = stages
        self.actions = actions
        self.artifacts = artifacts
        self.fingerprint = definition_fingerprint(
            stable_json_dumps(definition.model_dump(mode="json", by_alias=True))
        )
        self._action_by_name = {a.name: a.index for a in actions}

    @classmethod
    def build(cls, definition: PipelineDef) -> "PipelineGraph":
        flat: list[tuple[int, ActionDef]] = [
            (si, a) for si, s in enumerate(definition.stages) for a in s.actions
        ]

        producers: dict[str, list[int]] = defaultdict(list)
        for ai, (_, a) in enumerate(flat):
            for art in a.outputs:
                producers[art].append(ai)

        for art, who in producers.items():
            if len(who) > 1:
                raise DuplicateArtifactProducer(art, [flat[i][1].name for i in who])

        art_ids = sorted(producers, key=lambda x: (producers[x][0], x))
        art_index = {art: i for i, art in enumerate(art_ids)}

        consumers: dict[int, list[int]] = defaultdict(list)
        for ai, (si, a) in enumerate(flat):
            for art in a.inputs:
                if art not in producers:
                    raise UndeclaredArtifact(art, a.name, "no action produces it")
                pi = producers[art][0]
                p_stage, p_def = flat[pi]
                if p_stage > si:
                    raise UndeclaredArtifact(
                        art,
                        a.name,
                        f"produced by {p_def.name!r} in a later stage",
                    )
                if p_stage == si and p_def.run_order >= a.run_order:
                    raise UndeclaredArtifact(
                        art,
                        a.name,
                        f"produced by {p_def.name!r} in the same stage without a "
                        f"lower runOrder ({p_def.run_order} >= {a.run_order})",
                    )
                consumers[art_index[art]].append(ai)

        actions = tuple(
            ActionNode(
                index=ai,
                stage=si,
                name=a.name,
                kind=a.executor_kind,
                run_order=a.run_order,
                inputs=tuple(art_index[x] for x in a.inputs),
                outputs=tuple(art_index[x] for x in a.outputs),
                definition=a,
            )
            for ai, (si, a) in enumerate(flat)
        )
        artifacts = tuple(
            ArtifactNode(
                index=i,
                artifact_id=art,
                producer=producers[art][0],
                consumers=tuple(consumers.get(i, ())),
            )
            for i, art in enumerate(art_ids)
        )

        stages: list[StageNode] = []
        for si, s in enumerate(definition.stages):
            members = tuple(a.index for a in actions if a.stage == si)
            by_order: dict[int, list[int]] = defaultdict(list)
            for idx in members:
                by_order[actions[idx].run_order].append(idx)
            groups = tuple((ro, tuple(by_order[ro])) for ro in sorted(by_order))
            stages.append(
                StageNode(index=si, name=s.name, actions=members, groups=groups)
            )

        graph = cls(
            definition=definition,
            stages=tuple(stages),
            actions=actions,
            artifacts=artifacts,
        )
        graph.execution_order()
        return graph

    def action(self, index: int) -> ActionNode:
        return self.actions[index]

    def action_by_name(self, name: str) -> ActionNode:
        try:
            return self.actions[self._action_by_name[name]]
        except KeyError:
            raise KeyError(f"Unknown action: {name}") from None

    def inputs_of(self, action: ActionNode) -> list[ArtifactNode]:
        return [self.artifacts[i] for i in action.inputs]

    def outputs_of(self, action: ActionNode) -> list[ArtifactNode]:
        return [self.artifacts[i] for i in action.outputs]

    def execution_order(self) -> list[str]:
        """
        Topological order of actions over data edges plus the stage and
        runOrder sequencing edges. Raises DefinitionError on a cycle.
        """
        deps: dict[int, set[int]] = {a.index: set() for a in self.actions}
        for art in self.artifacts:
            for c in art.consumers:
                deps[c].add(art.producer)

        prev_group: tuple[int, ...] = ()
        for st in self.stages:
            for _, group in st.groups:
                for idx in group:
                    deps[idx].update(prev_group)
                prev_group = group

        try:
            order = list(TopologicalSorter(deps).static_order())
        except CycleError as e:
            raise DefinitionError(f"Artifact wiring contains a cycle: {e.args[1]}") from e
        return [self.actions[i].name for i in order]

    def unconsumed_artifacts(self) -> list[str]:
        return [a.artifact_id for a in self.artifacts if not a.consumers]

    def gates(self) -> list[ActionNode]:
        return [a for a in self.actions if a.is_gate]
