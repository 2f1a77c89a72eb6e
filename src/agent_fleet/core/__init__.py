"""Core orchestration: task model, configuration, session tracking and scheduling."""

from .task import AgentBackend, AgentRun, AgentStatus, RepoTask, TaskPriority, TokenUsage

__all__ = [
    "AgentBackend",
    "AgentRun",
    "AgentStatus",
    "RepoTask",
    "TaskPriority",
    "TokenUsage",
]
