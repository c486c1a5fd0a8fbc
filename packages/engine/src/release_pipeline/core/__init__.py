from .config import Settings, load_settings
from .errors import (
    ActionError,
    ApprovalNotPending,
    ArtifactNotFound,
    DefinitionError,
    DuplicateArtifactProducer,
    DuplicateArtifactWrite,
    ExecutorFailure,
    InvalidTransition,
    PipelineError,
    RunNotFound,
    TransientError,
    UndeclaredArtifact,
    action_error_from_exc,
)
from .fs import (
    atomic_write_bytes,
    atomic_write_text,
    create_exclusive,
    safe_unlink,
)
from .hashing import definition_fingerprint, sha256_bytes
from .json import atomic_write_json, read_json, stable_json_dumps
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger
from .paths import RunLayout, StoreLayout
from .provenance import RunProvenance, new_run_id
from .time import format_duration_ms, monotonic_ms, utc_now_iso

__all__ = [
    "ActionError",
    "ApprovalNotPending",
    "ArtifactNotFound",
    "DefinitionError",
    "DuplicateArtifactProducer",
    "DuplicateArtifactWrite",
    "ExecutorFailure",
    "ILogger",
    "InvalidTransition",
    "PipelineError",
    "RunLayout",
    "RunNotFound",
    "RunProvenance",
    "Settings",
    "StoreLayout",
    "TransientError",
    "UndeclaredArtifact",
    "action_error_from_exc",
    "atomic_write_bytes",
    "atomic_write_json",
    "atomic_write_text",
    "bind",
    "clear_bindings",
    "configure_logging",
    "create_exclusive",
    "definition_fingerprint",
    "format_duration_ms",
    "get_logger",
    "load_settings",
    "monotonic_ms",
    "new_run_id",
    "read_json",
    "safe_unlink",
    "sha256_bytes",
    "stable_json_dumps",
    "utc_now_iso",
]
