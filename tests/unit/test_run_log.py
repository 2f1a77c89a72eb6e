"""Tests for RunLogStore."""

import json
from datetime import UTC, datetime, timedelta

from conftest import make_task
from agent_fleet.core.run_log import MAX_HISTORY_ENTRIES, RunLogStore
from agent_fleet.core.task import AgentBackend, AgentRun, AgentStatus, TokenUsage


def _run(n=1, finished_at=None, **overrides) -> AgentRun:
    finished_at = finished_at or datetime.now(UTC)
    defaults = dict(
        task=make_task(n),
        backend=AgentBackend.API,
        status=AgentStatus.DONE,
        committed=True,
        output="agent transcript",
        tokens=TokenUsage.of(100, 20),
        started_at=finished_at - timedelta(seconds=42),
        finished_at=finished_at,
        max_retries=1,
    )
    defaults.update(overrides)
    return AgentRun(**defaults)


class TestWriteLog:
    def test_log_file_has_header_and_output(self, tmp_path):
        store = RunLogStore(tmp_path)

        path = store.write_log(_run(error=None))

        text = path.read_text()
        assert "Repo: repo-1 (/repos/repo-1)" in text
        assert "Task: [T-001] Task 1" in text
        assert "Status: done" in text
        assert "Duration: 42.0s" in text
        assert "Tokens: 100 in / 20 out" in text
        assert text.endswith("agent transcript")

    def test_history_newest_first(self, tmp_path):
        store = RunLogStore(tmp_path)
        store.write_log(_run(1))
        store.write_log(_run(2, status=AgentStatus.FAILED, committed=False, error="No commit detected"))

        history = store.get_history()

        assert [e.task_id for e in history] == ["T-002", "T-001"]
        assert history[0].status == "failed"
        assert history[0].error == "No commit detected"

    def test_history_capped(self, tmp_path):
        store = RunLogStore(tmp_path)
        for n in range(MAX_HISTORY_ENTRIES + 5):
            store.write_log(_run(n))

        data = json.loads(store.history_path.read_text())
        assert len(data["entries"]) == MAX_HISTORY_ENTRIES

    def test_get_history_limit(self, tmp_path):
        store = RunLogStore(tmp_path)
        for n in range(5):
            store.write_log(_run(n))
        assert len(store.get_history(limit=2)) == 2

    def test_unsafe_names_sanitized(self, tmp_path):
        store = RunLogStore(tmp_path)
        path = store.write_log(_run(task=make_task(1, repo_name="my repo/../x", task_id="T 1")))
        assert path.parent == store.runs_dir
        assert " " not in path.name

    def test_corrupt_history_ignored(self, tmp_path):
        store = RunLogStore(tmp_path)
        store.runs_dir.mkdir(parents=True)
        store.history_path.write_text("{broken")

        store.write_log(_run())

        assert len(store.get_history()) == 1


class TestClearOlderThan:
    def test_prunes_entries_and_files(self, tmp_path):
        store = RunLogStore(tmp_path)
        old_path = store.write_log(_run(1, finished_at=datetime.now(UTC) - timedelta(days=10)))
        new_path = store.write_log(_run(2))

        removed = store.clear_older_than(7)

        assert removed == 1
        assert not old_path.exists()
        assert new_path.exists()
        assert [e.task_id for e in store.get_history()] == ["T-002"]

    def test_nothing_to_prune(self, tmp_path):
        store = RunLogStore(tmp_path)
        store.write_log(_run())
        assert store.clear_older_than(7) == 0
