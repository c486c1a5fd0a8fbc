from __future__ import annotations

import traceback
from dataclasses import dataclass


class PipelineError(RuntimeError):
    """Base error"""


@dataclass(frozen=True, slots=True)
class ActionError:
    """
    A normalized error record for an action that raised instead of reporting Failure.
    """

    exc_type: str
    message: str
    traceback: str


def action_error_from_exc(exc: BaseException) -> ActionError:
    return ActionError(
        exc_type=type(exc).__name__,
        message=str(exc),
        traceback=traceback.format_exc(),
    )


class DefinitionError(PipelineError):
    """
    Non-runnable: the pipeline definition is malformed or its artifact wiring is
    inconsistent. Always raised at load time, before any run exists.
    """


class DuplicateArtifactProducer(DefinitionError):
    """Two actions declare the same output artifact id"""

    def __init__(self, artifact_id: str, producers: list[str]) -> None:
        super().__init__(
            f"Artifact {artifact_id!r} is produced by more than one action: {producers}"
        )
        self.artifact_id = artifact_id
        self.producers = producers


class UndeclaredArtifact(DefinitionError):
    """An action consumes an artifact no earlier action produces"""

    def __init__(self, artifact_id: str, consumer: str, detail: str) -> None:
        super().__init__(f"Action {consumer!r} consumes {artifact_id!r}: {detail}")
        self.artifact_id = artifact_id
        self.consumer = consumer


class ArtifactNotFound(PipelineError):
    """Artifact was never produced or has been purged"""


class DuplicateArtifactWrite(PipelineError):
    """A second put for an artifact id that is already bound"""


class ExecutorFailure(PipelineError):
    """
    Raised by executors for an expected, reportable failure (tests failed,
    push denied, deploy rejected). The message is recorded verbatim.
    """


class TransientError(ExecutorFailure):
    """
    Retryable transport failures such as network timeouts, temporary upstream 5xx
    """


class RunNotFound(PipelineError):
    """Unknown run id"""


class ApprovalNotPending(PipelineError):
    """Decision for a gate that is not currently waiting"""


class InvalidTransition(PipelineError):
    """Run state change that the state machine does not allow"""
