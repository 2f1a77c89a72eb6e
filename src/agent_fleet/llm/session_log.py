"""Per-session raw output log written while a backend runs."""

import logging
import re
import time
from pathlib import Path
from typing import Optional, TextIO

from ..core.task import RepoTask, TokenUsage

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def session_log_path(logs_dir: Path, prefix: str, task: RepoTask) -> Path:
    """logs_dir/<prefix>-<repo>-<task>.log with filesystem-safe components."""
    repo = _UNSAFE_CHARS.sub("_", task.repo_name)
    task_id = _UNSAFE_CHARS.sub("_", task.task_id)
    return logs_dir / f"{prefix}-{repo}-{task_id}.log"


class SessionLog:
    """Append-only log of one backend session. Every write is flushed.

    A log that cannot be opened degrades to a no-op; logging must never
    fail a run.
    """

    def __init__(self, path: Optional[Path]):
        self.path = path
        self._file: Optional[TextIO] = None

    def __enter__(self) -> "SessionLog":
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file = open(self.path, "a", encoding="utf-8")
            except OSError as e:
                logger.debug(f"Session log unavailable at {self.path}: {e}")
                self._file = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._file:
            self._file.close()
            self._file = None
        return False

    def write(self, text: str) -> None:
        if self._file:
            self._file.write(text)
            self._file.flush()

    def header(self, title: str, task: RepoTask, **fields) -> None:
        self.write(f"=== {title}: {task.repo_name} [{task.task_id}] ===\n")
        for key, value in fields.items():
            self.write(f"{key}: {value}\n")
        self.write(f"Started: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        self.write("=" * 50 + "\n\n")

    def summary(self, duration_s: float, usage: TokenUsage, **fields) -> None:
        self.write(f"\n\n{'=' * 50}\n")
        self.write("SUMMARY\n")
        self.write(f"{'=' * 50}\n")
        self.write(f"Completed: {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
        self.write(f"Duration: {duration_s:.1f}s\n")
        for key, value in fields.items():
            self.write(f"{key}: {value}\n")
        self.write(f"Tokens: {usage.input_tokens} in / {usage.output_tokens} out\n")
