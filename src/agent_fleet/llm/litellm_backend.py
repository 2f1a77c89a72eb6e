"""LiteLLM API backend: a multi-turn tool-use loop against a hosted model.

Each turn streams the model's reply, runs any requested tool calls through
the repository sandbox and feeds the results back. The loop ends when a turn
requests no tools, a turn errors, the turn budget is spent, or the
cancellation token fires (explicit cancel or wall-clock timeout).
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import litellm

from ..core.prompt_builder import build_agent_prompt
from ..core.task import RepoTask, TokenUsage
from ..sandbox.tool_executor import TOOL_CATALOG, ToolExecutor
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


@dataclass
class ToolCall:
    """A tool call assembled from streamed deltas."""
    id: str = ""
    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value

    def as_message_part(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


def _usage_from_chunk(chunk: Any) -> Optional[TokenUsage]:
    usage = getattr(chunk, "usage", None)
    if not usage:
        return None
    return TokenUsage.of(
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )


class LiteLLMBackend(AgentBackendRunner):
    """Drives any litellm-supported chat model with the sandboxed tool catalog."""

    name = "api"

    DEFAULT_TIMEOUT = 600
    DEFAULT_MAX_TURNS = 20

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        timeout: float = DEFAULT_TIMEOUT,
        command_timeout: float = 60,
        max_tokens: int = 4096,
        logs_dir: Optional[Path] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.max_turns = max_turns
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.max_tokens = max_tokens
        self.logs_dir = logs_dir

    async def run(
        self,
        task: RepoTask,
        on_output: OutputObserver,
        token: CancellationToken,
    ) -> BackendOutcome:
        start_time = time.time()
        log_path = session_log_path(self.logs_dir, "litellm", task) if self.logs_dir else None
        executor = ToolExecutor(Path(task.repo_path), command_timeout=self.command_timeout)
        messages: List[dict] = [{"role": "user", "content": build_agent_prompt(task)}]
        usage = TokenUsage()
        transcript: List[str] = []
        log_extra = {"repo": task.repo_name, "task_id": task.task_id}

        with SessionLog(log_path) as log:

            def emit(text: str) -> None:
                transcript.append(text)
                log.write(text)
                on_output(text)

            log.header("LiteLLM Task", task, Model=self.model, **{"Max turns": self.max_turns})

            error: Optional[str] = None
            finished = False
            timed_out = False
            cancelled = False
            turns = 0

            timer = start_timeout(token, self.timeout)
            try:
                while turns < self.max_turns:
                    turns += 1
                    emit(f"\n-- Turn {turns}/{self.max_turns} --\n")

                    try:
                        text, tool_calls, turn_usage = await token.race(
                            self._stream_turn(messages, emit)
                        )
                    except OperationCancelled:
                        raise
                    except Exception as e:
                        error = f"API error: {e}"
                        emit(f"\n{error}\n")
                        logger.error(f"LiteLLM call failed: {e}", extra=log_extra)
                        break

                    usage.add(turn_usage)

                    if not tool_calls:
                        emit("\nAgent finished.\n")
                        finished = True
                        break

                    # Tool replies must echo the ids the assistant message carries
                    for index, call in enumerate(tool_calls):
                        if not call.id:
                            call.id = f"call_{turns}_{index}"

                    messages.append({
                        "role": "assistant",
                        "content": text or None,
                        "tool_calls": [call.as_message_part() for call in tool_calls],
                    })

                    for call in tool_calls:
                        result = await token.race(self._execute_tool(executor, call, emit))
                        messages.append({
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": result,
                        })
                else:
                    error = f"Turn limit reached ({self.max_turns})"
                    emit(f"\n{error}\n")

            except OperationCancelled as e:
                timed_out = e.reason == "timeout"
                cancelled = not timed_out
                error = (
                    f"LiteLLM session timed out after {self.timeout} seconds"
                    if timed_out else "LiteLLM session cancelled"
                )
                emit(f"\n{error}\n")
                logger.warning(error, extra=log_extra)
            finally:
                timer.cancel()

            log.summary(
                time.time() - start_time, usage,
                Turns=turns, Finished=finished, **{"Timed out": timed_out},
            )

        return BackendOutcome(
            output="".join(transcript),
            usage=usage,
            exit_ok=finished and error is None,
            timed_out=timed_out,
            cancelled=cancelled,
            error=error,
        )

    async def _stream_turn(
        self,
        messages: List[dict],
        emit: Callable[[str], None],
    ) -> Tuple[str, List[ToolCall], TokenUsage]:
        """Send one request and stream it, returning text, tool calls and usage."""
        kwargs = {
            "model": self.model,
            "messages": messages,
            "tools": TOOL_CATALOG,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        response = await litellm.acompletion(**kwargs)

        text_parts: List[str] = []
        calls: Dict[int, ToolCall] = {}
        turn_usage = TokenUsage()

        async for chunk in response:
            chunk_usage = _usage_from_chunk(chunk)
            if chunk_usage is not None:
                turn_usage = chunk_usage

            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            if delta is None:
                continue

            content = getattr(delta, "content", None)
            if content:
                text_parts.append(content)
                emit(content)

            for part in getattr(delta, "tool_calls", None) or []:
                index = getattr(part, "index", None)
                if index is None:
                    index = len(calls)
                call = calls.setdefault(index, ToolCall())
                if getattr(part, "id", None):
                    call.id = part.id
                function = getattr(part, "function", None)
                if function is not None:
                    if getattr(function, "name", None):
                        call.name = function.name
                    if getattr(function, "arguments", None):
                        call.arguments += function.arguments

        return "".join(text_parts), [calls[i] for i in sorted(calls)], turn_usage

    async def _execute_tool(
        self,
        executor: ToolExecutor,
        call: ToolCall,
        emit: Callable[[str], None],
    ) -> str:
        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            emit(f"\nTool: {call.name} (invalid arguments)\n")
            return f"ERROR: invalid tool arguments: {e}"

        emit(f"\nTool: {call.name}({json.dumps(arguments)[:80]})\n")
        result = await executor.execute(call.name, arguments)
        emit(f"   -> {result[:120]}\n")
        return result
