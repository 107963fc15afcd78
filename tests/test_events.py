"""Tests for lifecycle events and their sinks."""

import io
import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from work_loop.core import history as history_mod
from work_loop.core.events import EventEmitter, HistorySink, JsonLinesSink, SlackSink
from work_loop.core.state import Stats
from work_loop.db.engine import init_db


@pytest.fixture
def db():
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


class TestEmitter:
    def test_fans_out_to_every_sink(self):
        first, second = [], []
        emitter = EventEmitter([first.append])
        emitter.add_sink(second.append)
        emitter.iteration(1)
        assert [e.event for e in first] == ["iteration"]
        assert first == second

    def test_failing_sink_does_not_interrupt(self):
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        emitter = EventEmitter([broken, received.append])
        emitter.complete(2, 100)
        assert len(received) == 1

    def test_payloads(self):
        emitter = EventEmitter()
        assert emitter.started("a.md", 3).data == {"spec": "a.md", "tasks": 3, "model": None, "harness": "claude"}
        assert emitter.tool("read", "Read", "a.py").data == {"category": "read", "name": "Read", "display": "a.py"}
        assert emitter.task_complete(1, "T001: x").data == {"index": 1, "text": "T001: x"}
        assert emitter.iteration_done(2, 50, Stats(reads=1)).data["stats"]["reads"] == 1
        assert emitter.stuck("No task progress", 3).data == {
            "reason": "No task progress", "iterations_without_progress": 3,
        }
        assert emitter.warning("budget", "too big").data == {"type": "budget", "message": "too big"}
        assert emitter.warning("todo_stub", "stubs", ["a.py"]).data["files"] == ["a.py"]

    def test_failed_context_optional(self):
        emitter = EventEmitter()
        assert emitter.failed("boom").data == {"error": "boom"}
        data = emitter.failed("boom", {"last_tool_name": "Bash"}, n=2).data
        assert data == {"error": "boom", "n": 2, "context": {"last_tool_name": "Bash"}}


class TestJsonLinesSink:
    def test_one_object_per_line(self):
        stream = io.StringIO()
        emitter = EventEmitter([JsonLinesSink(stream)])
        emitter.iteration(1)
        emitter.commit("abc1234", "feat: T001")

        lines = stream.getvalue().splitlines()
        assert len(lines) == 2
        first, second = (json.loads(line) for line in lines)
        assert first["event"] == "iteration"
        assert first["n"] == 1
        assert "timestamp" in first
        assert second == {**second, "event": "commit", "hash": "abc1234", "message": "feat: T001"}


class TestHistorySink:
    def test_records_events_and_iterations(self, db):
        run = history_mod.create_run(db, "/repo")
        emitter = EventEmitter([HistorySink(db, run.id)])
        emitter.iteration(1)
        emitter.commit("abc1234", "feat: T001")
        emitter.iteration_done(1, 900, Stats(writes=2))
        emitter.iteration(2)
        emitter.iteration_done(2, 100, Stats())

        events = [e.event for e in history_mod.list_run_events(db, run.id)]
        assert events == ["iteration", "commit", "iteration_done", "iteration", "iteration_done"]

        first, second = history_mod.list_iterations(db, run.id)
        assert (first.commit_hash, first.commit_message) == ("abc1234", "feat: T001")
        assert first.stats["writes"] == 2
        assert second.commit_hash is None

    def test_failed_iteration_recorded(self, db):
        run = history_mod.create_run(db, "/repo")
        emitter = EventEmitter([HistorySink(db, run.id)])
        emitter.failed("Agent exited with code 1", n=1, duration_ms=30, stats={"reads": 1})
        emitter.failed("No spec found.")

        (iteration,) = history_mod.list_iterations(db, run.id)
        assert iteration.error == "Agent exited with code 1"
        assert iteration.duration_ms == 30
        assert len(history_mod.list_run_events(db, run.id, event="failed")) == 2


class TestSlackSink:
    @patch("work_loop.core.events.slack_mod.send_message")
    def test_posts_terminal_events_only(self, mock_send):
        emitter = EventEmitter([SlackSink("xoxb-token", "#builds", "specs/active/a.md")])
        emitter.iteration(1)
        emitter.commit("abc1234", "msg")
        emitter.complete(4, 1000)

        mock_send.assert_called_once()
        token, channel, text, blocks = mock_send.call_args[0]
        assert (token, channel) == ("xoxb-token", "#builds")
        assert text == "Run complete: specs/active/a.md"
        assert "4 task(s) done" in blocks[0]["text"]["text"]

    @patch("work_loop.core.events.slack_mod.send_message")
    def test_stuck_detail(self, mock_send):
        EventEmitter([SlackSink("t", "#c")]).stuck("No task progress", 3)
        blocks = mock_send.call_args[0][3]
        assert "No progress for 3 iteration(s)" in blocks[0]["text"]["text"]

    def test_missing_token_is_swallowed_by_emitter(self):
        received = []
        emitter = EventEmitter([SlackSink(None, "#c"), received.append])
        emitter.failed("boom")
        assert len(received) == 1
