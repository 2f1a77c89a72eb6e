"""Tests for CancellationToken racing and parent/child propagation."""

import asyncio

import pytest

from agent_fleet.llm.base import CancellationToken, OperationCancelled, start_timeout


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("timeout")
        token.cancel("cancelled")
        assert token.cancelled
        assert token.reason == "timeout"

    def test_parent_cancels_child(self):
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("cancelled")
        assert child.cancelled
        assert child.reason == "cancelled"

    def test_child_does_not_cancel_parent(self):
        parent = CancellationToken()
        child = parent.child()
        child.cancel("timeout")
        assert not parent.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel("cancelled")
        assert parent.child().cancelled

    @pytest.mark.asyncio
    async def test_race_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        assert await CancellationToken().race(work()) == 42

    @pytest.mark.asyncio
    async def test_race_interrupted(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "cancelled")

        with pytest.raises(OperationCancelled) as exc_info:
            await token.race(asyncio.sleep(10))
        assert exc_info.value.reason == "cancelled"

    @pytest.mark.asyncio
    async def test_race_on_cancelled_token_never_starts_work(self):
        started = []

        async def work():
            started.append(True)

        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            await token.race(work())
        assert started == []

    @pytest.mark.asyncio
    async def test_race_propagates_work_errors(self):
        async def work():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            await CancellationToken().race(work())

    @pytest.mark.asyncio
    async def test_start_timeout_fires_with_timeout_reason(self):
        token = CancellationToken()
        start_timeout(token, 0.01)
        await asyncio.wait_for(token.wait(), timeout=2)
        assert token.reason == "timeout"
