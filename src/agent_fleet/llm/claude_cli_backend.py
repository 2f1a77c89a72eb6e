"""Agent CLI subprocess backend implementation."""

import asyncio
import codecs
import json
import logging
import os
import shutil
import signal
import time
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.prompt_builder import build_agent_prompt
from ..core.task import RepoTask, TokenUsage
from ..utils.process_utils import kill_process_tree
from .base import (
    AgentBackendRunner,
    BackendOutcome,
    CancellationToken,
    OperationCancelled,
    OutputObserver,
    start_timeout,
)
from .session_log import SessionLog, session_log_path

logger = logging.getLogger(__name__)

# Set inside an agent session; a nested CLI refuses to start when it is inherited
_STRIPPED_ENV_VARS = frozenset({"CLAUDECODE"})

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ExecutableNotFoundError(RuntimeError):
    """Raised when the agent CLI executable cannot be located."""


def resolve_executable(name: str) -> str:
    """Return a launchable path for ``name``.

    On Windows npm-installed CLIs are .cmd shims, which CreateProcess will not
    find from the bare name, so the script extensions are tried first.
    """
    if os.path.sep in name or (os.path.altsep and os.path.altsep in name):
        if Path(name).is_file():
            return name
        raise ExecutableNotFoundError(f"Agent CLI executable not found at {name}")

    candidates = [name]
    if os.name == "nt":
        candidates = [f"{name}.cmd", f"{name}.exe", name]
    for candidate in candidates:
        found = shutil.which(candidate)
        if found:
            return found
    raise ExecutableNotFoundError(f"Agent CLI executable '{name}' not found on PATH")


def parse_cli_output(raw: str) -> Tuple[str, TokenUsage]:
    """Recover result text and token usage from captured CLI stdout.

    Scans from the end for the last line that is a well-formed JSON object.
    Usage is read from ``usage`` or ``result.usage``; text from ``result``
    or ``content[0].text``. Without such a record, usage is zero and the raw
    text is the output.
    """
    for line in reversed(raw.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            parsed = json.loads(line)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(parsed, dict):
            continue

        result = parsed.get("result")
        usage = parsed.get("usage")
        if not isinstance(usage, dict) and isinstance(result, dict):
            usage = result.get("usage")
        usage = usage if isinstance(usage, dict) else {}

        tokens = TokenUsage.of(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

        text = None
        if isinstance(result, str) and result:
            text = result
        else:
            content = parsed.get("content")
            if isinstance(content, list) and content and isinstance(content[0], dict):
                text = content[0].get("text")
        return (text or raw), tokens

    return raw, TokenUsage()


class ClaudeCLIBackend(AgentBackendRunner):
    """
    Runs an agent CLI as a subprocess with the prompt on stdin.

    Flags select non-interactive print mode, an explicit tool allow-list and
    JSON output. A wall-clock timer fires the cancellation token; the process
    group then gets SIGTERM and, after a grace period, SIGKILL.
    """

    name = "process"

    # Default wall-clock budget per session (10 minutes)
    DEFAULT_TIMEOUT = 600

    def __init__(
        self,
        executable: str = "claude",
        allowed_tools: Optional[List[str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        kill_grace_period: float = 5,
        logs_dir: Optional[Path] = None,
        extra_env: Optional[dict] = None,
    ):
        self.executable = executable
        self.allowed_tools = allowed_tools or [
            "Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebFetch",
        ]
        self.timeout = timeout
        self.kill_grace_period = kill_grace_period
        self.logs_dir = logs_dir
        self.extra_env = extra_env or {}

    def build_args(self) -> List[str]:
        return [
            "--print",  # Non-interactive mode - write to stdout and exit
            "--allowedTools", ",".join(self.allowed_tools),
            "--output-format", "json",
        ]

    def _build_env(self) -> dict:
        env = os.environ.copy()
        env.update(self.extra_env)
        for key in _STRIPPED_ENV_VARS:
            env.pop(key, None)
        return env

    async def run(
        self,
        task: RepoTask,
        on_output: OutputObserver,
        token: CancellationToken,
    ) -> BackendOutcome:
        start_time = time.time()
        log_path = session_log_path(self.logs_dir, "claude-cli", task) if self.logs_dir else None

        with SessionLog(log_path) as log:
            try:
                executable = resolve_executable(self.executable)
            except ExecutableNotFoundError as e:
                message = f"Claude CLI error: {e}"
                log.write(message + "\n")
                on_output(message + "\n")
                logger.error(message, extra={"repo": task.repo_name, "task_id": task.task_id})
                return BackendOutcome.failure(message, output=message)

            cmd = [executable, *self.build_args()]
            log.header(
                "Claude CLI Task", task,
                Command=" ".join(cmd),
                **{"Working Directory": task.repo_path, "Timeout": f"{self.timeout}s"},
            )

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=task.repo_path,
                    env=self._build_env(),
                    start_new_session=os.name != "nt",
                )
            except OSError as e:
                message = f"Claude CLI error: {e}"
                log.write(message + "\n")
                on_output(message + "\n")
                logger.error(message, extra={"repo": task.repo_name, "task_id": task.task_id})
                return BackendOutcome.failure(message, output=message)

            prompt = build_agent_prompt(task)
            stdout_chunks: List[str] = []
            stderr_chunks: List[str] = []
            timed_out = False
            cancelled = False

            async def write_prompt():
                try:
                    process.stdin.write(prompt.encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.debug(f"Prompt write failed (process exited early): {e}")
                finally:
                    process.stdin.close()

            async def read_stdout(stream):
                decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                while True:
                    chunk = await stream.read(4096)
                    text = decoder.decode(chunk, final=not chunk)
                    if text:
                        stdout_chunks.append(text)
                        log.write(text)
                        on_output(text)
                    if not chunk:
                        break

            async def read_stderr(stream):
                decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
                header_written = False
                while True:
                    chunk = await stream.read(4096)
                    text = decoder.decode(chunk, final=not chunk)
                    if text:
                        stderr_chunks.append(text)
                        if not header_written and text.strip():
                            log.write(f"\n{'=' * 50}\nSTDERR:\n{'=' * 50}\n")
                            header_written = True
                        log.write(text)
                    if not chunk:
                        break

            timer = start_timeout(token, self.timeout)
            try:
                await token.race(asyncio.gather(
                    write_prompt(),
                    read_stdout(process.stdout),
                    read_stderr(process.stderr),
                    process.wait(),
                ))
            except OperationCancelled as e:
                timed_out = e.reason == "timeout"
                cancelled = not timed_out
                reason = f"timed out after {self.timeout}s" if timed_out else f"cancelled ({e.reason})"
                log.write(f"\n\n{'=' * 50}\n")
                log.write(f"INTERRUPTED: {reason}\n")
                log.write(f"Process terminated at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
                logger.warning(
                    f"Claude CLI {reason}, terminating process",
                    extra={"repo": task.repo_name, "task_id": task.task_id},
                )
                await self._terminate(process)
            except asyncio.CancelledError:
                if process.returncode is None:
                    kill_process_tree(process.pid, _SIGKILL)
                raise
            except Exception as e:
                logger.exception(
                    f"Claude CLI stream error: {e}",
                    extra={"repo": task.repo_name, "task_id": task.task_id},
                )
                await self._terminate(process)
                return BackendOutcome.failure(
                    f"Claude CLI error: {e}", output="".join(stdout_chunks),
                )
            finally:
                timer.cancel()

            raw = "".join(stdout_chunks)
            stderr_text = "".join(stderr_chunks)
            content, usage = parse_cli_output(raw)
            latency = time.time() - start_time

            log.summary(
                latency, usage,
                **{"Exit code": process.returncode, "Timed out": timed_out, "Cancelled": cancelled},
            )

            if timed_out or cancelled:
                error = (
                    f"Claude CLI timed out after {self.timeout} seconds"
                    if timed_out else "Claude CLI session cancelled"
                )
                return BackendOutcome(
                    output=content,
                    usage=usage,
                    exit_ok=False,
                    exit_code=process.returncode,
                    timed_out=timed_out,
                    cancelled=cancelled,
                    error=error,
                )

            if process.returncode == 0:
                return BackendOutcome(
                    output=content, usage=usage, exit_ok=True, exit_code=0,
                )

            error_parts = [f"Exit code {process.returncode}"]
            if stderr_text.strip():
                error_parts.append(f"STDERR: {stderr_text.strip()[:1000]}")
            error_msg = " | ".join(error_parts)
            logger.error(
                f"Claude CLI failed: returncode={process.returncode}\n"
                f"STDERR: {stderr_text[:1000]}\n"
                f"Log: {log_path}",
                extra={"repo": task.repo_name, "task_id": task.task_id},
            )
            return BackendOutcome(
                output=content,
                usage=usage,
                exit_ok=False,
                exit_code=process.returncode,
                error=error_msg,
            )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL if it outlives the grace period."""
        if process.returncode is not None:
            return
        kill_process_tree(process.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning(
                f"Process {process.pid} didn't exit {self.kill_grace_period}s after SIGTERM, sending SIGKILL"
            )
        kill_process_tree(process.pid, _SIGKILL)
        await process.wait()
