"""Result sink: one log file per finished run plus a bounded JSON history."""

import json
import logging
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..utils.atomic_io import WriteResult, try_write_model
from .task import AgentRun

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class RunLogEntry(BaseModel):
    """Summary of one finished run as recorded in history.json."""
    repo_name: str
    repo_path: str
    task_id: str
    task_title: str
    backend: str
    status: str
    committed: bool
    retry_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    finished_at: datetime
    log_file: str


class _History(BaseModel):
    entries: List[RunLogEntry] = Field(default_factory=list)


class RunLogStore:
    """Writes run logs under ``logs_dir/runs`` and keeps the newest entries first."""

    def __init__(self, logs_dir: Path):
        self.runs_dir = Path(logs_dir) / "runs"
        self.history_path = self.runs_dir / "history.json"

    def write_log(self, run: AgentRun) -> Optional[Path]:
        """Persist ``run``. Returns the log file path, or None if it couldn't be written."""
        finished_at = run.finished_at or datetime.now(UTC)
        stamp = finished_at.strftime("%Y%m%d-%H%M%S")
        repo = _UNSAFE_CHARS.sub("_", run.task.repo_name)
        task_id = _UNSAFE_CHARS.sub("_", run.task.task_id)
        log_path = self.runs_dir / f"{stamp}-{repo}-{task_id}.log"

        try:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            log_path.write_text(self._render(run), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write run log {log_path}: {e}")
            return None

        entry = RunLogEntry(
            repo_name=run.task.repo_name,
            repo_path=run.task.repo_path,
            task_id=run.task.task_id,
            task_title=run.task.task_title,
            backend=run.backend.value,
            status=run.status.value,
            committed=run.committed,
            retry_count=run.retry_count,
            input_tokens=run.tokens.input_tokens,
            output_tokens=run.tokens.output_tokens,
            duration_seconds=run.duration_seconds,
            error=run.error,
            finished_at=finished_at,
            log_file=log_path.name,
        )
        entries = [entry, *self._load()][:MAX_HISTORY_ENTRIES]
        self._save(entries)
        return log_path

    def get_history(self, limit: int = 20) -> List[RunLogEntry]:
        return self._load()[:limit]

    def clear_older_than(self, days: int) -> int:
        """Drop history entries older than ``days`` together with their log files."""
        cutoff = datetime.now(UTC) - timedelta(days=days)
        kept: List[RunLogEntry] = []
        removed = 0
        for entry in self._load():
            if entry.finished_at >= cutoff:
                kept.append(entry)
                continue
            removed += 1
            try:
                (self.runs_dir / entry.log_file).unlink(missing_ok=True)
            except OSError as e:
                logger.debug(f"Could not remove {entry.log_file}: {e}")
        if removed:
            self._save(kept)
        return removed

    def _render(self, run: AgentRun) -> str:
        task = run.task
        lines = [
            f"Repo: {task.repo_name} ({task.repo_path})",
            f"Task: [{task.task_id}] {task.task_title}",
            f"Backend: {run.backend.value}",
            f"Status: {run.status.value}",
            f"Committed: {run.committed}",
            f"Started: {run.started_at.isoformat() if run.started_at else '-'}",
            f"Finished: {run.finished_at.isoformat() if run.finished_at else '-'}",
            f"Duration: {run.duration_seconds:.1f}s",
            f"Tokens: {run.tokens.input_tokens} in / {run.tokens.output_tokens} out",
            f"Retries: {run.retry_count}/{run.max_retries}",
        ]
        if run.error:
            lines.append(f"Error: {run.error}")
        lines.append("=" * 50)
        return "\n".join(lines) + "\n\n" + run.output

    def _load(self) -> List[RunLogEntry]:
        if not self.history_path.exists():
            return []
        try:
            data = json.loads(self.history_path.read_text(encoding="utf-8"))
            return _History.model_validate(data).entries
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable run history {self.history_path}: {e}")
            return []

    def _save(self, entries: List[RunLogEntry]) -> WriteResult:
        result = try_write_model(self.history_path, _History(entries=entries))
        if not result.ok:
            logger.warning(f"Could not update run history: {result.error}")
        return result
