"""Repository-scoped tool execution for API-driven agents."""

from .tool_executor import ALLOWED_COMMANDS, TOOL_CATALOG, SandboxViolation, ToolExecutor

__all__ = ["ALLOWED_COMMANDS", "TOOL_CATALOG", "SandboxViolation", "ToolExecutor"]
