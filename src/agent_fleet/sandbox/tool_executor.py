"""Tool executor confined to a single repository root.

Every path argument is resolved against the repository root and rejected
if it lands outside it. run_command only launches executables from
ALLOWED_COMMANDS, without a shell. Violations come back to the agent as
"ERROR: ..." tool results; they never abort the run.
"""

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

READ_LIMIT = 8000
COMMAND_OUTPUT_LIMIT = 4000

ALLOWED_COMMANDS = (
    "git", "npm", "pnpm", "node", "npx", "tsc", "vitest", "jest",
    "echo", "ls", "dir", "cat", "type", "pwd", "cd",
)

TOOL_CATALOG = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a file from the repository",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Relative path from repo root"},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Write content to a file",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_dir",
            "description": "List files in a directory",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": 'Relative path, or "." for root'},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a command in the repo directory (build, test, git)",
            "parameters": {
                "type": "object",
                "properties": {"command": {"type": "string"}},
                "required": ["command"],
            },
        },
    },
]


class SandboxViolation(ValueError):
    """A tool call tried to leave the repository or run a disallowed command."""


class ToolExecutor:
    """Executes read_file / write_file / list_dir / run_command for one repo."""

    def __init__(self, repo_root: Path, command_timeout: float = 60):
        self.repo_root = Path(repo_root).resolve()
        self.command_timeout = command_timeout

    def resolve_path(self, raw: str) -> Path:
        """Resolve ``raw`` under the repo root.

        Leading slashes are stripped so "/src/app.py" means "<root>/src/app.py".

        Raises:
            SandboxViolation: the resolved path is outside the repo root
        """
        candidate = (self.repo_root / raw.lstrip("/\\")).resolve()
        if candidate != self.repo_root and not candidate.is_relative_to(self.repo_root):
            raise SandboxViolation("path outside repo")
        return candidate

    @staticmethod
    def check_command(command: str) -> list:
        """Split ``command`` and verify its executable is allow-listed.

        Raises:
            SandboxViolation: empty command or executable not in ALLOWED_COMMANDS
        """
        try:
            parts = shlex.split(command)
        except ValueError as e:
            raise SandboxViolation(f"could not parse command: {e}")
        executable = parts[0] if parts else ""
        if executable.lower() not in ALLOWED_COMMANDS:
            raise SandboxViolation(
                f"command '{executable}' not in allowlist. Allowed: {', '.join(ALLOWED_COMMANDS)}"
            )
        return parts

    async def execute(self, name: str, arguments: Optional[Dict[str, Any]]) -> str:
        """Run one tool call and return its textual result.

        Never raises for sandbox violations or filesystem errors; those are
        returned as "ERROR: ..." strings for the agent to read.
        """
        args = arguments or {}
        try:
            if name == "read_file":
                return self._read_file(str(args.get("path", "")))
            if name == "write_file":
                return self._write_file(str(args.get("path", "")), str(args.get("content", "")))
            if name == "list_dir":
                return self._list_dir(str(args.get("path", ".")))
            if name == "run_command":
                return await self._run_command(str(args.get("command", "")))
            return f"ERROR: unknown tool {name}"
        except SandboxViolation as e:
            logger.warning(f"Rejected {name} call in {self.repo_root}: {e}")
            return f"ERROR: {e}"
        except (OSError, UnicodeDecodeError) as e:
            return f"ERROR: {e}"

    def _read_file(self, path: str) -> str:
        fp = self.resolve_path(path)
        if not fp.is_file():
            return "ERROR: file not found"
        return fp.read_text(encoding="utf-8", errors="replace")[:READ_LIMIT]

    def _write_file(self, path: str, content: str) -> str:
        fp = self.resolve_path(path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(content, encoding="utf-8")
        return f"OK: wrote {fp}"

    def _list_dir(self, path: str) -> str:
        dp = self.resolve_path(path)
        if not dp.is_dir():
            return "ERROR: directory not found"
        entries = sorted(dp.iterdir(), key=lambda p: p.name)
        return "\n".join(
            f"{'[dir]' if entry.is_dir() else '[file]'} {entry.name}" for entry in entries
        )

    async def _run_command(self, command: str) -> str:
        parts = self.check_command(command)
        try:
            process = await asyncio.create_subprocess_exec(
                *parts,
                cwd=str(self.repo_root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return f"ERROR: executable '{parts[0]}' not found"

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return f"ERROR: command timed out after {self.command_timeout}s"
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise

        combined = (
            stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
        )
        return combined[:COMMAND_OUTPUT_LIMIT] or f"exit {process.returncode}"
