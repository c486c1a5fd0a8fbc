from .graph import ActionNode, ArtifactNode, PipelineGraph, StageNode
from .loader import (
    load_definition,
    parse_definition,
    resolve_definition_path,
    schema_for_pipeline_definition,
)
from .models import (
    ActionDef,
    ApprovalConfig,
    BuildConfig,
    ContainerizeConfig,
    DeployConfig,
    ExecutorKind,
    PipelineDef,
    SourceConfig,
    StageDef,
)

__all__ = [
    "ActionDef",
    "ActionNode",
    "ApprovalConfig",
    "ArtifactNode",
    "BuildConfig",
    "ContainerizeConfig",
    "DeployConfig",
    "ExecutorKind",
    "PipelineDef",
    "PipelineGraph",
    "SourceConfig",
    "StageDef",
    "StageNode",
    "load_definition",
    "parse_definition",
    "resolve_definition_path",
    "schema_for_pipeline_definition",
]
