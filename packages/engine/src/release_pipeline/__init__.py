from .artifacts import ArtifactRef, FileArtifactStore, MemoryArtifactStore
from .definition import PipelineGraph, load_definition, parse_definition
from .executors import Decision, ExecutorRegistry, Failure, Success
from .pipeline import EngineConfig, PipelineEngine, PipelineRun, RunStatus

__version__ = "0.1.0"

__all__ = [
    "ArtifactRef",
    "Decision",
    "EngineConfig",
    "ExecutorRegistry",
    "Failure",
    "FileArtifactStore",
    "MemoryArtifactStore",
    "PipelineEngine",
    "PipelineGraph",
    "PipelineRun",
    "RunStatus",
    "Success",
    "load_definition",
    "parse_definition",
]
