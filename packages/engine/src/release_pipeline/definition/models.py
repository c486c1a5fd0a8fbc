from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    model_validator,
)

NamePattern = r"^[A-Za-z0-9][A-Za-z0-9_\-\.]*$"

StageName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=100, pattern=NamePattern),
]
ActionName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=100, pattern=NamePattern),
]
ArtifactId = Annotated[
    str,
    StringConstraints(min_length=1, max_length=100, pattern=NamePattern),
]


class ExecutorKind(StrEnum):
    source = "source"
    build = "build"
    containerize = "containerize"
    deploy = "deploy"
    approval = "approval"


class SourceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    repository: str = Field(
        ..., pattern=r"^[\w.\-]+/[\w.\-]+$", examples=["acme/storefront"]
    )
    branch: str = Field(default="main", min_length=1)
    archive_url: str = Field(
        default="https://codeload.github.com/{repository}/tar.gz/{revision}",
        description="Template with {repository} and {revision} placeholders",
    )
    # Name handed to the secrets provider, never the secret itself.
    token_secret: Optional[str] = None


class _CommandConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: list[str] = Field(..., min_length=1, examples=[["sh", "ci/test.sh"]])
    env: dict[str, str] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(default=None, gt=0)


class BuildConfig(_CommandConfig):
    pass


class ContainerizeConfig(_CommandConfig):
    registry: str = Field(..., min_length=1, examples=["123.dkr.ecr.local/app"])
    tag: str = Field(default="latest", min_length=1)


class DeployConfig(_CommandConfig):
    environment: str = Field(..., min_length=1, examples=["test", "prod"])


class ApprovalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    comment: Optional[str] = None
    timeout_s: Optional[float] = Field(default=None, gt=0)


ExecutorConfig = Union[
    SourceConfig, BuildConfig, ContainerizeConfig, DeployConfig, ApprovalConfig
]

CONFIG_MODELS: dict[ExecutorKind, type[BaseModel]] = {
    ExecutorKind.source: SourceConfig,
    ExecutorKind.build: BuildConfig,
    ExecutorKind.containerize: ContainerizeConfig,
    ExecutorKind.deploy: DeployConfig,
    ExecutorKind.approval: ApprovalConfig,
}


class ActionDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: ActionName
    executor_kind: ExecutorKind = Field(..., alias="executorKind")
    run_order: int = Field(default=1, ge=1, alias="runOrder")
    inputs: list[ArtifactId] = Field(default_factory=list)
    outputs: list[ArtifactId] = Field(default_factory=list)
    configuration: ExecutorConfig = Field(default_factory=ApprovalConfig)

    @model_validator(mode="before")
    @classmethod
    def _typed_configuration(cls, data: Any) -> Any:
        # The configuration model is selected by the executor kind tag.
        if not isinstance(data, dict):
            return data
        raw_kind = data.get("executorKind", data.get("executor_kind"))
        try:
            kind = ExecutorKind(raw_kind)
        except ValueError:
            return data
        cfg = data.get("configuration")
        model = CONFIG_MODELS[kind]
        if not isinstance(cfg, model):
            data = {**data, "configuration": model.model_validate(cfg or {})}
        return data

    @model_validator(mode="after")
    def _validate(self) -> "ActionDef":
        if len(self.inputs) != len(set(self.inputs)):
            raise ValueError(f"Duplicate input artifact ids in action {self.name}")
        if len(self.outputs) != len(set(self.outputs)):
            raise ValueError(f"Duplicate output artifact ids in action {self.name}")
        if set(self.inputs) & set(self.outputs):
            raise ValueError(f"Action {self.name} consumes its own output")

        if self.executor_kind is ExecutorKind.source:
            if self.inputs:
                raise ValueError(f"Source action {self.name} must not have inputs")
            if not self.outputs:
                raise ValueError(f"Source action {self.name} must declare an output")

        if self.executor_kind is ExecutorKind.approval and (
            self.inputs or self.outputs
        ):
            raise ValueError(
                f"Approval action {self.name} must not declare inputs or outputs"
            )
        return self


class StageDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: StageName
    actions: list[ActionDef] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate(self) -> "StageDef":
        names = [a.name for a in self.actions]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate action names in stage {self.name}")
        return self


class PipelineDef(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(default=1, ge=1)
    name: StageName
    stages: list[StageDef] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate(self) -> "PipelineDef":
        stage_names = [s.name for s in self.stages]
        if len(stage_names) != len(set(stage_names)):
            dupes = sorted({x for x in stage_names if stage_names.count(x) > 1})
            raise ValueError(f"Duplicate stage name(s): {dupes}")

        # Approval decisions address gates by action name, so names are global.
        action_names = [a.name for s in self.stages for a in s.actions]
        if len(action_names) != len(set(action_names)):
            dupes = sorted({x for x in action_names if action_names.count(x) > 1})
            raise ValueError(f"Duplicate action name(s) across stages: {dupes}")
        return self
