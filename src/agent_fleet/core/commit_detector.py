"""Decide whether an agent session left a commit behind.

Signals, strongest first:

1. HEAD moved between the pre-session and post-session snapshots.
2. ``git log --since`` shows a commit in the recent window.
3. The session output mentions a commit. Weak evidence; only consulted
   when neither git check could give an answer.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from ..utils.subprocess_utils import GitResult, run_git_command

logger = logging.getLogger(__name__)

RECENT_COMMIT_WINDOW = "5 minutes ago"

# git prints "[<branch> <sha>] <subject>" after a successful commit
_COMMIT_PHRASES = re.compile(r"committed|\[main |\[master ", re.IGNORECASE)

GitRunner = Callable[..., Awaitable[GitResult]]


@dataclass(frozen=True)
class HeadSnapshot:
    """HEAD as seen before a session. ``sha`` is None when it couldn't be read."""
    sha: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.sha is not None


class CommitDetector:
    """Commit detection for one repository at a time; holds no per-repo state."""

    def __init__(self, run_git: GitRunner = run_git_command):
        self._run_git = run_git

    async def capture_head(self, repo_path: str) -> HeadSnapshot:
        result = await self._git(["rev-parse", "HEAD"], repo_path)
        if not result.ok or not result.stdout:
            logger.debug(f"Could not read HEAD in {repo_path}: {result.error}")
            return HeadSnapshot(error=result.error or "empty rev-parse output")
        return HeadSnapshot(sha=result.stdout.split()[0])

    async def detect(self, repo_path: str, before: HeadSnapshot, output: str = "") -> bool:
        """Return True if the session that started at ``before`` committed."""
        head_checked = False
        if before.ok:
            after = await self.capture_head(repo_path)
            if after.ok:
                head_checked = True
                if after.sha != before.sha:
                    logger.debug(f"HEAD moved in {repo_path}: {before.sha[:8]} -> {after.sha[:8]}")
                    return True

        recent = await self._git(
            ["log", "--oneline", "-1", f"--since={RECENT_COMMIT_WINDOW}"], repo_path
        )
        if recent.ok:
            if recent.stdout:
                logger.debug(f"Recent commit in {repo_path}: {recent.stdout}")
                return True
            return False

        if head_checked:
            return False

        logger.debug(f"git unavailable in {repo_path} ({recent.error}); scanning output")
        return self.output_claims_commit(output)

    @staticmethod
    def output_claims_commit(output: str) -> bool:
        return bool(output) and _COMMIT_PHRASES.search(output) is not None

    async def _git(self, args: List[str], repo_path: str) -> GitResult:
        try:
            return await self._run_git(args, cwd=Path(repo_path))
        except OSError as e:
            return GitResult.failure(str(e))
