"""Agent backend implementations."""

from .base import AgentBackendRunner, BackendOutcome, CancellationToken, OperationCancelled
from .claude_cli_backend import ClaudeCLIBackend, ExecutableNotFoundError

# LiteLLMBackend is imported from .litellm_backend directly; litellm is slow to import

__all__ = [
    "AgentBackendRunner",
    "BackendOutcome",
    "CancellationToken",
    "OperationCancelled",
    "ClaudeCLIBackend",
    "ExecutableNotFoundError",
]
