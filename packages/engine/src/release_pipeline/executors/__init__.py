from .approval import (
    ApprovalBroker,
    ApprovalDecision,
    ApprovalGate,
    Decision,
)
from .base import (
    ActionContext,
    ActionExecutor,
    ActionOutcome,
    ExecutorRegistry,
    Failure,
    Success,
    invoke,
)
from .command import CommandExecutor
from .source import EnvSecretsProvider, HttpSourceExecutor, SecretsProvider

__all__ = [
    "ActionContext",
    "ActionExecutor",
    "ActionOutcome",
    "ApprovalBroker",
    "ApprovalDecision",
    "ApprovalGate",
    "CommandExecutor",
    "Decision",
    "EnvSecretsProvider",
    "ExecutorRegistry",
    "Failure",
    "HttpSourceExecutor",
    "SecretsProvider",
    "Success",
    "invoke",
]


def default_registry(**source_kw) -> ExecutorRegistry:
    """
    Registry serving every kind with the bundled reference executors.
    """
    cmd = CommandExecutor()
    return ExecutorRegistry(
        {
            "source": HttpSourceExecutor(**source_kw),
            "build": cmd,
            "containerize": cmd,
            "deploy": cmd,
        }
    )
