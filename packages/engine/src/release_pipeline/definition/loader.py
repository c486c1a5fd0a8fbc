from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema
from pydantic import TypeAdapter, ValidationError

from release_pipeline.core import DefinitionError, read_json

from .graph import PipelineGraph
from .models import PipelineDef


@lru_cache(maxsize=1)
def schema_for_pipeline_definition() -> dict:
    return TypeAdapter(PipelineDef).json_schema(by_alias=True)


def _validate_with_jsonschema(instance: Any, schema: dict) -> None:
    try:
        jsonschema.validate(instance=instance, schema=schema)
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise DefinitionError(f"Pipeline definition invalid at {where}: {e.message}") from e


def resolve_definition_path(explicit: Path | None = None) -> Path:
    """
    Resolve the pipeline definition file.

    Priority:
      1) explicit argument
      2) env RELEASE_PIPELINE_DEFINITION
      3) ./pipeline.json
    """
    if explicit is not None:
        p = Path(explicit).expanduser().resolve()
        if p.is_file():
            return p
        raise DefinitionError(f"Pipeline definition not found: {p}")

    env = os.environ.get("RELEASE_PIPELINE_DEFINITION")
    if env:
        p = Path(env).expanduser().resolve()
        if p.is_file():
            return p
        raise DefinitionError(f"RELEASE_PIPELINE_DEFINITION does not point to a file: {p}")

    cand = Path.cwd() / "pipeline.json"
    if cand.is_file():
        return cand.resolve()

    raise DefinitionError(
        "Could not resolve a pipeline definition. "
        "Pass a path or set RELEASE_PIPELINE_DEFINITION."
    )


def parse_definition(raw: Any) -> PipelineGraph:
    """
    Validate a raw (JSON-decoded) definition and build its graph.
    """
    _validate_with_jsonschema(raw, schema_for_pipeline_definition())
    try:
        definition = PipelineDef.model_validate(raw)
    except ValidationError as e:
        raise DefinitionError(f"Pipeline definition invalid:\n{e}") from e
    return PipelineGraph.build(definition)


def load_definition(path: Path | None = None) -> PipelineGraph:
    p = resolve_definition_path(path)
    try:
        raw = read_json(p)
    except json.JSONDecodeError as e:
        raise DefinitionError(f"Pipeline definition is not valid JSON: {p}: {e}") from e
    return parse_definition(raw)
