"""Async subprocess helpers for version-control queries.

Git failures here are environmental (git missing, not a repository, hung
process), so helpers report them through GitResult rather than raising.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 10


@dataclass(frozen=True)
class GitResult:
    """Outcome of a git invocation."""
    ok: bool
    stdout: str = ""
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "GitResult":
        return cls(ok=False, error=error)


async def run_git_command(
    args: List[str],
    *,
    cwd: Path,
    timeout: float = GIT_TIMEOUT,
) -> GitResult:
    """
    Run a git command in cwd without raising on failure.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Repository directory
        timeout: Seconds before the git process is killed

    Returns:
        GitResult with ok=True and stripped stdout on exit code 0,
        otherwise ok=False and a short error description.
    """
    cmd = ["git", *args]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        return GitResult.failure(f"git unavailable: {e}")

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.debug(f"git {' '.join(args)} timed out after {timeout}s in {cwd}")
        return GitResult.failure(f"git {' '.join(args)} timed out after {timeout}s")

    stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
    if process.returncode != 0:
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        return GitResult.failure(f"git {' '.join(args)} exited {process.returncode}: {stderr[:200]}")
    return GitResult(ok=True, stdout=stdout)
