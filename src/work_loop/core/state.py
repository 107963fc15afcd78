"""Per-iteration state machine fed by parser events.

Tracks the agent's current phase, the tools in flight, completed tools
coalesced into display groups, counters, a bounded activity log and the
last commit seen. Handlers never raise: out-of-order or unknown events are
absorbed and only show up in the counters.
"""

import re
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Union

from work_loop.config import ACTIVITY_LOG_LIMIT, TASK_TEXT_LIMIT
from work_loop.core.stream import (
    ParserEvent,
    ResultEvent,
    TextEvent,
    ToolEndEvent,
    ToolStartEvent,
    content_text,
)
from work_loop.core.tools import (
    CATEGORY_PRIORITY,
    COMMAND,
    META,
    READ,
    WRITE,
    get_category_verb,
    get_tool_category,
    get_tool_display_name,
)

IDLE = "idle"
READING = "reading"
EDITING = "editing"
RUNNING = "running"
THINKING = "thinking"
DONE = "done"

CATEGORY_PHASES = {
    READ: READING,
    WRITE: EDITING,
    COMMAND: RUNNING,
    META: THINKING,
}

# "[main 1a2b3c4] Add login form" as printed by git commit
COMMIT_OUTPUT_PATTERN = re.compile(r"^\[[\w/-]+\s+([a-f0-9]{7,40})\]\s+(.+)$", re.MULTILINE)


@dataclass
class ActiveTool:
    id: str
    name: str
    category: str
    start_time: float
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletedTool:
    id: str
    name: str
    category: str
    duration_ms: int
    is_error: bool
    output: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolGroup:
    category: str
    tools: list[CompletedTool] = field(default_factory=list)
    total_duration_ms: int = 0


@dataclass
class Stats:
    tools_started: int = 0
    tools_completed: int = 0
    tools_errored: int = 0
    reads: int = 0
    writes: int = 0
    commands: int = 0
    meta_ops: int = 0

    def to_dict(self) -> dict:
        return {
            "tools_started": self.tools_started,
            "tools_completed": self.tools_completed,
            "tools_errored": self.tools_errored,
            "reads": self.reads,
            "writes": self.writes,
            "commands": self.commands,
            "meta_ops": self.meta_ops,
        }


@dataclass(frozen=True)
class Thought:
    timestamp: datetime
    text: str


@dataclass(frozen=True)
class ToolStartActivity:
    timestamp: datetime
    tool_use_id: str
    tool_name: str
    display_name: str


@dataclass(frozen=True)
class ToolCompleteActivity:
    timestamp: datetime
    tool_use_id: str
    tool_name: str
    display_name: str
    duration_ms: int
    is_error: bool


@dataclass(frozen=True)
class CommitActivity:
    timestamp: datetime
    hash: str
    message: str


ActivityItem = Union[Thought, ToolStartActivity, ToolCompleteActivity, CommitActivity]


@dataclass(frozen=True)
class Commit:
    hash: str
    message: str


@dataclass
class IterationState:
    iteration: int
    total_iterations: int
    phase: str = IDLE
    start_time: float = 0.0
    task_text: str | None = None
    active_tools: dict[str, ActiveTool] = field(default_factory=dict)
    completed_tools: list[CompletedTool] = field(default_factory=list)
    tool_groups: list[ToolGroup] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)
    activity_log: deque = field(default_factory=lambda: deque(maxlen=ACTIVITY_LOG_LIMIT))
    result: ResultEvent | None = None
    last_commit: Commit | None = None


def parse_commit_output(output: str) -> Commit | None:
    """Extract the hash and subject from ``git commit`` output, if present."""
    match = COMMIT_OUTPUT_PATTERN.search(output)
    if not match:
        return None
    return Commit(hash=match.group(1), message=match.group(2).strip())


class StateMachine:
    """Owns one iteration's ``IterationState``; reuse across iterations with ``reset``."""

    def __init__(
        self,
        iteration: int = 1,
        total_iterations: int = 1,
        activity_limit: int = ACTIVITY_LOG_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._activity_limit = activity_limit
        self._clock = clock
        self.state = self._fresh_state(iteration, total_iterations)

    def _fresh_state(self, iteration: int, total_iterations: int) -> IterationState:
        return IterationState(
            iteration=iteration,
            total_iterations=total_iterations,
            start_time=self._clock(),
            activity_log=deque(maxlen=self._activity_limit),
        )

    def reset(self, iteration: int | None = None, total_iterations: int | None = None):
        self.state = self._fresh_state(
            iteration if iteration is not None else self.state.iteration,
            total_iterations if total_iterations is not None else self.state.total_iterations,
        )

    @property
    def elapsed_ms(self) -> int:
        return int((self._clock() - self.state.start_time) * 1000)

    def handle(self, event: ParserEvent):
        """Dispatch a parser event to its handler. Init and error events carry no state."""
        if isinstance(event, TextEvent):
            self.handle_text(event)
        elif isinstance(event, ToolStartEvent):
            self.handle_tool_start(event)
        elif isinstance(event, ToolEndEvent):
            self.handle_tool_end(event)
        elif isinstance(event, ResultEvent):
            self.handle_result(event)

    # ── Handlers ─────────────────────────────────────────────────────────

    def handle_text(self, event: TextEvent):
        state = self.state
        text = event.text.strip()
        if state.task_text is None:
            state.task_text = text[:TASK_TEXT_LIMIT]
        if state.phase == IDLE:
            state.phase = THINKING
        if text:
            state.activity_log.append(Thought(timestamp=datetime.now(), text=text))

    def handle_tool_start(self, event: ToolStartEvent):
        state = self.state
        category = get_tool_category(event.tool_name)
        state.active_tools[event.tool_use_id] = ActiveTool(
            id=event.tool_use_id,
            name=event.tool_name,
            category=category,
            start_time=self._clock(),
            input=event.input,
        )
        state.stats.tools_started += 1
        state.phase = CATEGORY_PHASES[category]
        state.activity_log.append(
            ToolStartActivity(
                timestamp=datetime.now(),
                tool_use_id=event.tool_use_id,
                tool_name=event.tool_name,
                display_name=get_tool_display_name(event.tool_name, event.input),
            )
        )

    def handle_tool_end(self, event: ToolEndEvent):
        state = self.state
        active = state.active_tools.pop(event.tool_use_id, None)
        if active is None:
            return

        duration_ms = max(0, int((self._clock() - active.start_time) * 1000))
        output = content_text(event.content)
        tool = CompletedTool(
            id=active.id,
            name=active.name,
            category=active.category,
            duration_ms=duration_ms,
            is_error=event.is_error,
            output=output,
            input=active.input,
        )

        stats = state.stats
        stats.tools_completed += 1
        if event.is_error:
            stats.tools_errored += 1
        if active.category == READ:
            stats.reads += 1
        elif active.category == WRITE:
            stats.writes += 1
        elif active.category == COMMAND:
            stats.commands += 1
        else:
            stats.meta_ops += 1

        state.completed_tools.append(tool)
        self._add_to_groups(tool)
        state.activity_log.append(
            ToolCompleteActivity(
                timestamp=datetime.now(),
                tool_use_id=active.id,
                tool_name=active.name,
                display_name=get_tool_display_name(active.name, active.input),
                duration_ms=duration_ms,
                is_error=event.is_error,
            )
        )
        state.phase = self._phase_for_active_tools()

        if active.category == COMMAND and not event.is_error:
            commit = parse_commit_output(output)
            if commit:
                state.last_commit = commit
                state.activity_log.append(
                    CommitActivity(timestamp=datetime.now(), hash=commit.hash, message=commit.message)
                )

    def handle_result(self, event: ResultEvent):
        self.state.result = event
        self.state.phase = DONE

    # ── Internals ────────────────────────────────────────────────────────

    def _add_to_groups(self, tool: CompletedTool):
        groups = self.state.tool_groups
        if groups and groups[-1].category == tool.category:
            groups[-1].tools.append(tool)
            groups[-1].total_duration_ms += tool.duration_ms
        else:
            groups.append(
                ToolGroup(category=tool.category, tools=[tool], total_duration_ms=tool.duration_ms)
            )

    def _phase_for_active_tools(self) -> str:
        active = {t.category for t in self.state.active_tools.values()}
        if not active:
            return THINKING
        for category in CATEGORY_PRIORITY:
            if category in active:
                return CATEGORY_PHASES[category]
        return THINKING

    # ── Queries ──────────────────────────────────────────────────────────

    def active_tool_names(self) -> list[str]:
        return [t.name for t in self.state.active_tools.values()]

    def active_tools_by_category(self, category: str) -> list[ActiveTool]:
        return [t for t in self.state.active_tools.values() if t.category == category]

    def coalesced_summary(self) -> str:
        """One-line status such as ``Reading a.py, b.py • Running pytest``."""
        state = self.state
        if state.phase == DONE:
            return f"Done ({state.stats.tools_completed} tools)"
        if not state.active_tools:
            return "Waiting..." if state.phase == IDLE else "Thinking..."

        by_category: dict[str, list[str]] = {}
        for tool in state.active_tools.values():
            by_category.setdefault(tool.category, []).append(
                get_tool_display_name(tool.name, tool.input)
            )

        parts = []
        for category, names in by_category.items():
            verb = get_category_verb(category)
            if len(names) <= 3:
                parts.append(f"{verb} {', '.join(names)}")
            else:
                parts.append(f"{verb} {len(names)} items")
        return " • ".join(parts)
