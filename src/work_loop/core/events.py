"""Lifecycle events emitted while a run progresses.

The control loop reports every milestone through an ``EventEmitter`` it is
handed, never through a process-wide sink. The emitter fans each event out
to its sinks: plain callables taking a ``LifecycleEvent``. Sinks are
best-effort; a failing sink is logged and never interrupts the run.
"""

import json
import logging
import sqlite3
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, TextIO

from work_loop.core import history as history_mod
from work_loop.core.state import Stats
from work_loop.integrations import slack as slack_mod

logger = logging.getLogger(__name__)

STARTED = "started"
ITERATION = "iteration"
TOOL = "tool"
COMMIT = "commit"
TASK_COMPLETE = "task_complete"
ITERATION_DONE = "iteration_done"
STUCK = "stuck"
COMPLETE = "complete"
FAILED = "failed"
WARNING = "warning"

TERMINAL_EVENTS = (COMPLETE, STUCK, FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LifecycleEvent:
    event: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {"event": self.event, "timestamp": self.timestamp.isoformat(), **self.data}


Sink = Callable[[LifecycleEvent], None]


class EventEmitter:
    """Fans lifecycle events out to a list of sinks."""

    def __init__(self, sinks: list[Sink] | None = None):
        self.sinks: list[Sink] = list(sinks or [])

    def add_sink(self, sink: Sink):
        self.sinks.append(sink)

    def emit(self, event: str, **data) -> LifecycleEvent:
        item = LifecycleEvent(event=event, data=data)
        for sink in self.sinks:
            try:
                sink(item)
            except Exception:
                logger.exception("Event sink failed on '%s'", event)
        return item

    def started(self, spec: str, tasks: int, model: str | None = None, harness: str = "claude"):
        return self.emit(STARTED, spec=spec, tasks=tasks, model=model, harness=harness)

    def iteration(self, n: int, phase: str = "starting"):
        return self.emit(ITERATION, n=n, phase=phase)

    def tool(self, category: str, name: str, display: str | None = None):
        return self.emit(TOOL, category=category, name=name, display=display)

    def commit(self, hash: str, message: str):
        return self.emit(COMMIT, hash=hash, message=message)

    def task_complete(self, index: int, text: str):
        return self.emit(TASK_COMPLETE, index=index, text=text)

    def iteration_done(self, n: int, duration_ms: int, stats: Stats):
        return self.emit(ITERATION_DONE, n=n, duration_ms=duration_ms, stats=stats.to_dict())

    def stuck(self, reason: str, iterations_without_progress: int):
        return self.emit(STUCK, reason=reason, iterations_without_progress=iterations_without_progress)

    def complete(self, tasks_done: int, total_duration_ms: int):
        return self.emit(COMPLETE, tasks_done=tasks_done, total_duration_ms=total_duration_ms)

    def failed(self, error: str, context: dict | None = None, **details):
        if context:
            details["context"] = context
        return self.emit(FAILED, error=error, **details)

    def warning(self, type: str, message: str, files: list[str] | None = None):
        if files:
            return self.emit(WARNING, type=type, message=message, files=files)
        return self.emit(WARNING, type=type, message=message)


# ── Sinks ─────────────────────────────────────────────────────────────────────


class JsonLinesSink:
    """Writes each event as one JSON object per line (stdout by default)."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream

    def __call__(self, event: LifecycleEvent):
        stream = self.stream or sys.stdout
        stream.write(json.dumps(event.to_dict(), default=str) + "\n")
        stream.flush()


class HistorySink:
    """Persists events and finished iterations to the run-history database."""

    def __init__(self, db: sqlite3.Connection, run_id: int):
        self.db = db
        self.run_id = run_id
        self._commit: dict | None = None

    def __call__(self, event: LifecycleEvent):
        history_mod.record_event(self.db, self.run_id, event.event, event.data)

        if event.event == COMMIT:
            self._commit = event.data
        elif event.event == ITERATION_DONE:
            commit, self._commit = self._commit or {}, None
            history_mod.record_iteration(
                self.db,
                self.run_id,
                n=event.data["n"],
                duration_ms=event.data["duration_ms"],
                stats=event.data["stats"],
                commit_hash=commit.get("hash"),
                commit_message=commit.get("message"),
            )
        elif event.event == FAILED:
            n = event.data.get("n")
            if n is not None:
                history_mod.record_iteration(
                    self.db, self.run_id, n=n,
                    duration_ms=event.data.get("duration_ms", 0),
                    stats=event.data.get("stats", {}),
                    error=event.data["error"],
                )


class SlackSink:
    """Posts terminal run outcomes to a Slack channel."""

    def __init__(self, token: str | None, channel: str, spec: str = ""):
        self.token = token
        self.channel = channel
        self.spec = spec

    def __call__(self, event: LifecycleEvent):
        if event.event not in TERMINAL_EVENTS:
            return
        if event.event == COMPLETE:
            detail = f"{event.data['tasks_done']} task(s) done"
        elif event.event == STUCK:
            detail = f"No progress for {event.data['iterations_without_progress']} iteration(s)"
        else:
            detail = event.data.get("error", "")
        blocks = slack_mod.format_run_notification(event.event, self.spec, detail)
        slack_mod.send_message(self.token, self.channel, f"Run {event.event}: {self.spec}", blocks)
