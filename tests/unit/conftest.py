"""Shared fixtures and fakes for unit tests."""

import asyncio
from typing import Callable, List, Optional

import pytest

from agent_fleet.core.commit_detector import HeadSnapshot
from agent_fleet.core.task import RepoTask, TaskPriority, TokenUsage
from agent_fleet.llm.base import (
    AgentBackendRunner,
    BackendOutcome,
    CancellationToken,
    OperationCancelled,
)


def make_task(n: int = 1, **overrides) -> RepoTask:
    defaults = dict(
        repo_path=f"/repos/repo-{n}",
        repo_name=f"repo-{n}",
        task_id=f"T-{n:03d}",
        task_title=f"Task {n}",
        priority=TaskPriority.MEDIUM,
        phase="build",
    )
    defaults.update(overrides)
    return RepoTask(**defaults)


class FakeBackend(AgentBackendRunner):
    """Scripted backend: records concurrency and returns queued outcomes in order."""

    name = "fake"

    def __init__(
        self,
        outcomes: Optional[List[BackendOutcome]] = None,
        delay: float = 0.01,
        on_start: Optional[Callable[[RepoTask], None]] = None,
    ):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.on_start = on_start
        self.calls: List[RepoTask] = []
        self.active = 0
        self.max_active = 0

    async def run(self, task, on_output, token: CancellationToken) -> BackendOutcome:
        self.calls.append(task)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.on_start is not None:
                self.on_start(task)
            on_output(f"working on {task.task_id}\n")
            try:
                await token.race(asyncio.sleep(self.delay))
            except OperationCancelled as e:
                return BackendOutcome(
                    output="interrupted",
                    exit_ok=False,
                    timed_out=e.reason == "timeout",
                    cancelled=e.reason != "timeout",
                    error=f"interrupted: {e.reason}",
                )
            if self.outcomes:
                return self.outcomes.pop(0)
            return BackendOutcome(output=f"done {task.task_id}", usage=TokenUsage.of(10, 5))
        finally:
            self.active -= 1


class FakeCommitDetector:
    """Commit detector whose answer per repo (or per call) is scripted."""

    def __init__(self, committed: bool = True, sequence: Optional[List[bool]] = None):
        self.committed = committed
        self.sequence = list(sequence or [])
        self.detect_calls: List[str] = []

    async def capture_head(self, repo_path: str) -> HeadSnapshot:
        return HeadSnapshot(sha="a" * 40)

    async def detect(self, repo_path: str, before: HeadSnapshot, output: str = "") -> bool:
        self.detect_calls.append(repo_path)
        if self.sequence:
            return self.sequence.pop(0)
        return self.committed


@pytest.fixture
def task_factory():
    return make_task
