"""Registry of which repositories are busy, plus a FIFO queue of deferred tasks.

The in-memory registry is authoritative for this process. Every mutation is
projected to two files:

- the shared snapshot (``{updatedAt, sessions}``) that unrelated processes read
  without locking; this process never reads it back;
- an optional state file holding sessions and queue, loaded once at startup so
  state left by an abnormal shutdown can be inspected and then cleared.

Both writes are best-effort: failures are logged and dropped.
"""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..utils.atomic_io import WriteResult, try_write_model
from .task import AgentBackend, RepoTask

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


def _now() -> datetime:
    return datetime.now(UTC)


class ActiveSession(BaseModel):
    """A backend currently working on a repository. At most one per repo_path."""

    model_config = ConfigDict(populate_by_name=True)

    repo_path: str = Field(alias="repoPath")
    repo_name: str = Field(alias="repoName")
    task_id: str = Field(alias="taskId")
    task_title: str = Field(alias="taskTitle")
    backend: AgentBackend
    started_at: datetime = Field(default_factory=_now, alias="startedAt")
    pid: Optional[int] = None

    @classmethod
    def for_task(cls, task: RepoTask, backend: AgentBackend, **kwargs) -> "ActiveSession":
        return cls(
            repo_path=task.repo_path,
            repo_name=task.repo_name,
            task_id=task.task_id,
            task_title=task.task_title,
            backend=backend,
            **kwargs,
        )


class QueuedTask(BaseModel):
    """A task waiting for its repository's active session to end."""

    model_config = ConfigDict(populate_by_name=True)

    repo_path: str = Field(alias="repoPath")
    repo_name: str = Field(alias="repoName")
    task_id: str = Field(alias="taskId")
    task_title: str = Field(alias="taskTitle")
    queued_at: datetime = Field(default_factory=_now, alias="queuedAt")

    @classmethod
    def for_task(cls, task: RepoTask) -> "QueuedTask":
        return cls(
            repo_path=task.repo_path,
            repo_name=task.repo_name,
            task_id=task.task_id,
            task_title=task.task_title,
        )


class SessionSnapshot(BaseModel):
    """Shape of the shared snapshot file."""

    model_config = ConfigDict(populate_by_name=True)

    updated_at: datetime = Field(alias="updatedAt")
    sessions: List[ActiveSession] = Field(default_factory=list)


class _TrackerState(BaseModel):
    sessions: List[ActiveSession] = Field(default_factory=list)
    queue: List[QueuedTask] = Field(default_factory=list)


def read_snapshot(snapshot_path: Path) -> Optional[SessionSnapshot]:
    """Read the shared snapshot as an external process would.

    Missing, torn or otherwise invalid files mean "no data" and return None.
    """
    try:
        raw = snapshot_path.read_text(encoding="utf-8")
        return SessionSnapshot.model_validate_json(raw)
    except (OSError, ValueError, ValidationError):
        return None


class SessionTracker:
    """
    Tracks active sessions and queued tasks per repository.

    - is_repo_active(path) -> an agent is already working there
    - enqueue(task) -> defer a task until the current session ends
    - after each run, drain_queue(path, run_fn) starts the next queued task
    - on_change(listener) -> observers refresh after any mutation
    """

    def __init__(self, snapshot_path: Path, state_path: Optional[Path] = None):
        self.snapshot_path = Path(snapshot_path)
        self.state_path = Path(state_path) if state_path is not None else None
        self._sessions: List[ActiveSession] = []
        self._queue: List[QueuedTask] = []
        self._listeners: List[ChangeListener] = []
        self._load_state()

    # -- Active sessions ------------------------------------------------------

    def get_active_sessions(self) -> List[ActiveSession]:
        return list(self._sessions)

    def is_repo_active(self, repo_path: str) -> bool:
        return any(s.repo_path == repo_path for s in self._sessions)

    def register_session(self, session: ActiveSession) -> None:
        """Add ``session``, superseding any existing session for the same repo."""
        self._sessions = [s for s in self._sessions if s.repo_path != session.repo_path]
        self._sessions.append(session)
        self._persist_sessions()
        self._notify()

    def deregister_session(self, repo_path: str) -> None:
        self._sessions = [s for s in self._sessions if s.repo_path != repo_path]
        self._persist_sessions()
        self._notify()

    def clear_stale_sessions(self) -> None:
        """Drop all sessions; call at startup, a leftover session cannot be told apart from a crashed one."""
        self._sessions = []
        self._persist_sessions()
        self._notify()

    def clear_queue(self) -> None:
        """Drop all queued tasks; call at startup alongside clear_stale_sessions."""
        self._queue = []
        self._persist_state()
        self._notify()

    # -- Task queue -----------------------------------------------------------

    def get_queue(self) -> List[QueuedTask]:
        return list(self._queue)

    def enqueue(self, task: QueuedTask) -> bool:
        """Append ``task`` unless the same (repo_path, task_id) is already queued.

        Returns True when the task was inserted.
        """
        if any(q.repo_path == task.repo_path and q.task_id == task.task_id for q in self._queue):
            logger.debug(f"Task {task.task_id} already queued for {task.repo_name}")
            return False
        self._queue.append(task)
        self._persist_state()
        self._notify()
        return True

    def dequeue(self, repo_path: str) -> Optional[QueuedTask]:
        """Remove and return the oldest queued task for ``repo_path``, or None."""
        for index, queued in enumerate(self._queue):
            if queued.repo_path == repo_path:
                del self._queue[index]
                self._persist_state()
                self._notify()
                return queued
        return None

    def drain_queue(self, repo_path: str, run_fn: Callable[[QueuedTask], None]) -> Optional[QueuedTask]:
        """Dequeue at most one task for ``repo_path`` and hand it to ``run_fn``."""
        queued = self.dequeue(repo_path)
        if queued is not None:
            logger.info(
                f"Starting queued task [{queued.task_id}] {queued.task_title}",
                extra={"repo": queued.repo_name},
            )
            run_fn(queued)
        return queued

    # -- Change notifications -------------------------------------------------

    def on_change(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Session change listener failed: {e}")

    # -- Persistence ----------------------------------------------------------

    def _persist_sessions(self) -> None:
        self._write_snapshot()
        self._persist_state()

    def _write_snapshot(self) -> WriteResult:
        snapshot = SessionSnapshot(updated_at=_now(), sessions=self._sessions)
        result = try_write_model(self.snapshot_path, snapshot, by_alias=True)
        if not result.ok:
            logger.debug(f"Snapshot write skipped: {result.error}")
        return result

    def _persist_state(self) -> Optional[WriteResult]:
        if self.state_path is None:
            return None
        state = _TrackerState(sessions=self._sessions, queue=self._queue)
        result = try_write_model(self.state_path, state, by_alias=True)
        if not result.ok:
            logger.debug(f"State write skipped: {result.error}")
        return result

    def _load_state(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            state = _TrackerState.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable tracker state {self.state_path}: {e}")
            return
        self._sessions = state.sessions
        self._queue = state.queue
        if self._sessions or self._queue:
            logger.info(
                f"Restored {len(self._sessions)} session(s) and {len(self._queue)} queued task(s) "
                f"from {self.state_path}"
            )
