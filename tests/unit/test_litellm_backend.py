"""Tests for the LiteLLM tool-use loop backend."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from agent_fleet.core.task import RepoTask
from agent_fleet.llm.base import CancellationToken
from agent_fleet.llm.litellm_backend import LiteLLMBackend, ToolCall

ACOMPLETION = "agent_fleet.llm.litellm_backend.litellm.acompletion"


def _text_chunk(text):
    delta = SimpleNamespace(content=text, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def _tool_chunk(index, call_id=None, name=None, arguments=None):
    part = SimpleNamespace(
        index=index,
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )
    delta = SimpleNamespace(content=None, tool_calls=[part])
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def _usage_chunk(prompt_tokens, completion_tokens):
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(choices=[], usage=usage)


class ScriptedCompletion:
    """Stands in for litellm.acompletion; each call streams the next scripted turn."""

    def __init__(self, turns):
        self.turns = list(turns)
        self.requests = []

    async def __call__(self, **kwargs):
        self.requests.append(json.loads(json.dumps(kwargs["messages"])))
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn

        async def stream():
            for chunk in turn:
                yield chunk

        return stream()


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n")
    return root


def _task(repo) -> RepoTask:
    return RepoTask(repo_path=str(repo), repo_name="demo", task_id="T-1", task_title="Document it")


class TestToolCall:
    def test_empty_arguments(self):
        assert ToolCall(id="c1", name="list_dir").parsed_arguments() == {}

    def test_non_object_arguments_rejected(self):
        with pytest.raises(ValueError):
            ToolCall(id="c1", name="list_dir", arguments="[1]").parsed_arguments()


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_single_turn_without_tools_finishes(self, repo):
        completion = ScriptedCompletion([[_text_chunk("Nothing to do."), _usage_chunk(100, 10)]])
        chunks = []
        backend = LiteLLMBackend(model="gpt-4o", max_turns=5)

        with patch(ACOMPLETION, new=completion):
            outcome = await backend.run(_task(repo), chunks.append, CancellationToken())

        assert outcome.exit_ok
        assert outcome.error is None
        assert outcome.usage.input_tokens == 100
        assert outcome.usage.output_tokens == 10
        assert "Nothing to do." in "".join(chunks)
        assert "Agent finished." in outcome.output

    @pytest.mark.asyncio
    async def test_tool_call_executed_and_fed_back(self, repo):
        completion = ScriptedCompletion([
            [
                _text_chunk("Writing notes."),
                _tool_chunk(0, call_id="call_1", name="write_file", arguments='{"path": "NOTES.md", '),
                _tool_chunk(0, arguments='"content": "hello"}'),
                _usage_chunk(50, 20),
            ],
            [_text_chunk("Done."), _usage_chunk(70, 5)],
        ])
        backend = LiteLLMBackend(max_turns=5)

        with patch(ACOMPLETION, new=completion):
            outcome = await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert outcome.exit_ok
        assert (repo / "NOTES.md").read_text() == "hello"
        assert outcome.usage.input_tokens == 120
        assert outcome.usage.output_tokens == 25

        second_request = completion.requests[1]
        assistant = second_request[-2]
        tool_result = second_request[-1]
        assert assistant["role"] == "assistant"
        assert assistant["tool_calls"][0]["function"]["name"] == "write_file"
        assert tool_result["role"] == "tool"
        assert tool_result["tool_call_id"] == "call_1"
        assert tool_result["content"].startswith("OK: wrote")

    @pytest.mark.asyncio
    async def test_missing_tool_call_id_filled_consistently(self, repo):
        """A generated id appears in both the assistant message and the tool reply."""
        completion = ScriptedCompletion([
            [_tool_chunk(0, name="list_dir", arguments='{"path": "."}')],
            [_text_chunk("Done.")],
        ])
        backend = LiteLLMBackend(max_turns=5)

        with patch(ACOMPLETION, new=completion):
            outcome = await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert outcome.exit_ok
        assistant, tool_result = completion.requests[1][-2:]
        assert assistant["tool_calls"][0]["id"] == "call_1_0"
        assert tool_result["tool_call_id"] == "call_1_0"

    @pytest.mark.asyncio
    async def test_sandbox_violation_returned_to_agent(self, repo):
        completion = ScriptedCompletion([
            [_tool_chunk(0, call_id="c1", name="read_file", arguments='{"path": "../../etc/passwd"}')],
            [_text_chunk("Understood.")],
        ])
        backend = LiteLLMBackend(max_turns=5)

        with patch(ACOMPLETION, new=completion):
            outcome = await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert outcome.exit_ok
        assert completion.requests[1][-1]["content"] == "ERROR: path outside repo"

    @pytest.mark.asyncio
    async def test_turn_limit(self, repo):
        turns = [
            [_tool_chunk(0, call_id=f"c{i}", name="list_dir", arguments='{"path": "."}')]
            for i in range(2)
        ]
        backend = LiteLLMBackend(max_turns=2)

        with patch(ACOMPLETION, new=ScriptedCompletion(turns)):
            outcome = await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert not outcome.exit_ok
        assert outcome.error == "Turn limit reached (2)"

    @pytest.mark.asyncio
    async def test_api_error_ends_loop(self, repo):
        backend = LiteLLMBackend(max_turns=5)

        with patch(ACOMPLETION, new=ScriptedCompletion([RuntimeError("rate limited")])):
            outcome = await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert not outcome.exit_ok
        assert outcome.error == "API error: rate limited"

    @pytest.mark.asyncio
    async def test_timeout_fires_token(self, repo):
        async def hanging(**kwargs):
            await asyncio.sleep(30)

        backend = LiteLLMBackend(max_turns=5, timeout=0.1)

        with patch(ACOMPLETION, new=hanging):
            outcome = await asyncio.wait_for(
                backend.run(_task(repo), lambda _: None, CancellationToken()), timeout=5
            )

        assert outcome.timed_out
        assert not outcome.cancelled
        assert not outcome.exit_ok

    @pytest.mark.asyncio
    async def test_explicit_cancel(self, repo):
        async def hanging(**kwargs):
            await asyncio.sleep(30)

        token = CancellationToken()
        backend = LiteLLMBackend(max_turns=5, timeout=30)
        asyncio.get_running_loop().call_later(0.1, token.cancel, "cancelled")

        with patch(ACOMPLETION, new=hanging):
            outcome = await asyncio.wait_for(backend.run(_task(repo), lambda _: None, token), timeout=5)

        assert outcome.cancelled
        assert not outcome.timed_out
        assert outcome.error == "LiteLLM session cancelled"

    @pytest.mark.asyncio
    async def test_credentials_forwarded(self, repo):
        captured = {}

        async def completion(**kwargs):
            captured.update(kwargs)

            async def stream():
                yield _text_chunk("ok")

            return stream()

        backend = LiteLLMBackend(model="azure/gpt-4o", api_key="sk-test", api_base="https://llm.example.com")

        with patch(ACOMPLETION, new=completion):
            await backend.run(_task(repo), lambda _: None, CancellationToken())

        assert captured["model"] == "azure/gpt-4o"
        assert captured["api_key"] == "sk-test"
        assert captured["api_base"] == "https://llm.example.com"
        assert captured["stream"] is True
        assert [t["function"]["name"] for t in captured["tools"]] == [
            "read_file", "write_file", "list_dir", "run_command",
        ]
