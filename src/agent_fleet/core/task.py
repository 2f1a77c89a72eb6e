"""Task and run models shared by the tracker, backends and orchestrator."""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskPriority(str, Enum):
    """Priority assigned by the task source."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AgentStatus(str, Enum):
    """Lifecycle of one AgentRun: queued -> running -> done | failed."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class AgentBackend(str, Enum):
    """Execution strategy for a run."""
    PROCESS = "process"  # External agent CLI driven over stdin/stdout
    API = "api"          # Hosted chat-completions tool loop


class RepoTask(BaseModel):
    """One unit of eligible work. Repository path is the serialization key."""

    model_config = ConfigDict(frozen=True)

    repo_path: str
    repo_name: str
    task_id: str
    task_title: str
    priority: TaskPriority = TaskPriority.MEDIUM
    phase: str = "unknown"
    context: str = ""

    @field_validator("repo_path")
    @classmethod
    def normalize_repo_path(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("repo_path must not be empty")
        return str(Path(v).expanduser())

    @field_validator("task_id")
    @classmethod
    def validate_task_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("task_id must not be empty")
        return v

    @property
    def key(self) -> tuple:
        return (self.repo_path, self.task_id)


class TokenUsage(BaseModel):
    """Input/output token counters. Only ever grows via add()."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens

    @classmethod
    def of(cls, input_tokens: int = 0, output_tokens: int = 0) -> "TokenUsage":
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )


class AgentRun(BaseModel):
    """Mutable execution record for one task, across all of its attempts."""

    task: RepoTask
    backend: AgentBackend
    status: AgentStatus = AgentStatus.QUEUED
    output: str = ""
    committed: bool = False
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 0
    error: Optional[str] = None

    @property
    def repo_path(self) -> str:
        return self.task.repo_path

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in (AgentStatus.DONE, AgentStatus.FAILED)


def load_tasks(tasks_path: Path) -> List[RepoTask]:
    """Load RepoTasks from a YAML file.

    Accepts either a top-level list or a mapping with a ``tasks`` list.
    Missing ``repo_name`` defaults to the repository directory name.
    """
    if not tasks_path.exists():
        raise FileNotFoundError(f"Tasks file not found: {tasks_path}")

    with open(tasks_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or []

    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise ValueError(f"{tasks_path}: expected a list of tasks")

    tasks = []
    for entry in data:
        entry = dict(entry)
        if "repo_name" not in entry and "repo_path" in entry:
            entry["repo_name"] = Path(str(entry["repo_path"])).expanduser().name
        tasks.append(RepoTask(**entry))
    return tasks
