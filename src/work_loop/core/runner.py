"""Running one iteration of the external agent.

``ClaudeRunner`` launches the agent CLI with line-delimited JSON output,
feeds its stdout through a ``LineParser`` and forwards every event to a
callback. An idle watchdog terminates the process when it stays silent
for too long. ``run_single_iteration`` wires those events into a fresh
``StateMachine`` and seals the outcome as an ``IterationResult``.
"""

import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from work_loop.config import DEFAULT_IDLE_TIMEOUT
from work_loop.core.budget import BudgetResult
from work_loop.core.specs import IN_PROGRESS, SpecDocument, next_task
from work_loop.core.state import (
    CommitActivity,
    StateMachine,
    Stats,
    Thought,
    ToolCompleteActivity,
    ToolGroup,
    ToolStartActivity,
)
from work_loop.core.stream import LineParser, ParserEvent, ResultEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[ParserEvent], None]


class RunnerError(Exception):
    """Raised when the agent process cannot be started."""


@dataclass
class RunnerResult:
    success: bool
    duration_ms: int = 0
    error: str | None = None
    cost_usd: float | None = None
    num_turns: int | None = None


@dataclass
class IterationResult:
    iteration: int
    duration_ms: int
    stats: Stats = field(default_factory=Stats)
    error: str | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    failure_context: dict | None = None


class AgentRunner(Protocol):
    def run(self, prompt: str, cwd: str | Path, on_event: EventCallback) -> RunnerResult:
        ...


# ── Claude CLI runner ────────────────────────────────────────────────────────


class _IdleWatchdog:
    """Background thread that terminates a process after ``timeout`` seconds of silence."""

    def __init__(self, proc: subprocess.Popen, timeout: float | None):
        self.proc = proc
        self.timeout = timeout
        self.timed_out = False
        self._last_activity = time.monotonic()
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name="idle-watchdog", daemon=True)

    def start(self):
        if self.timeout and self.timeout > 0:
            self._thread.start()

    def touch(self):
        self._last_activity = time.monotonic()

    def stop(self):
        self._stop_event.set()
        if self._thread.is_alive():
            self._thread.join(timeout=5)

    def _run(self):
        interval = min(1.0, self.timeout)
        while not self._stop_event.wait(interval):
            if time.monotonic() - self._last_activity >= self.timeout:
                self.timed_out = True
                logger.warning(
                    "Agent PID %s idle for %ss, terminating", self.proc.pid, self.timeout
                )
                self.proc.terminate()
                return


class ClaudeRunner:
    """Runs the ``claude`` CLI in print mode with streamed JSON output.

    ``command`` replaces the whole command line (the prompt is appended as
    the last argument), which lets any program speaking the same line
    protocol stand in for the agent.

    When ``save_jsonl`` is set, every raw stdout line is appended to that
    file before parsing.
    """

    def __init__(
        self,
        claude_bin: str = "claude",
        model: str | None = None,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
        command: list[str] | None = None,
        save_jsonl: str | Path | None = None,
    ):
        self.claude_bin = claude_bin
        self.model = model
        self.idle_timeout = idle_timeout
        self.command = command
        self.save_jsonl = Path(save_jsonl) if save_jsonl else None

    def build_command(self, prompt: str) -> list[str]:
        if self.command:
            return [*self.command, prompt]
        cmd = [
            self.claude_bin,
            "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if self.model:
            cmd += ["--model", self.model]
        return cmd

    def _open_transcript(self):
        if not self.save_jsonl:
            return None
        try:
            self.save_jsonl.parent.mkdir(parents=True, exist_ok=True)
            return self.save_jsonl.open("a", encoding="utf-8")
        except OSError as e:
            raise RunnerError(f"Cannot write transcript {self.save_jsonl}: {e}") from e

    def run(self, prompt: str, cwd: str | Path, on_event: EventCallback) -> RunnerResult:
        start = time.monotonic()
        cmd = self.build_command(prompt)
        transcript = self._open_transcript()
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            if transcript:
                transcript.close()
            raise RunnerError(f"Failed to start {cmd[0]}: {e}") from e

        logger.info("Agent launched (PID %s) in %s", proc.pid, cwd)
        stderr_tail: deque[str] = deque(maxlen=20)
        stderr_thread = threading.Thread(
            target=lambda: stderr_tail.extend(proc.stderr), name="agent-stderr", daemon=True
        )
        stderr_thread.start()

        parser = LineParser()
        watchdog = _IdleWatchdog(proc, self.idle_timeout)
        watchdog.start()
        result_event: ResultEvent | None = None
        try:
            for line in proc.stdout:
                watchdog.touch()
                if transcript:
                    transcript.write(line)
                    transcript.flush()
                for event in parser.feed(line):
                    if isinstance(event, ResultEvent):
                        result_event = event
                    on_event(event)
            for event in parser.flush():
                if isinstance(event, ResultEvent):
                    result_event = event
                on_event(event)
            exit_code = proc.wait()
        finally:
            watchdog.stop()
            if transcript:
                transcript.close()
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            stderr_thread.join(timeout=5)

        duration_ms = int((time.monotonic() - start) * 1000)
        error = None
        if watchdog.timed_out:
            error = f"Idle timeout after {self.idle_timeout:g}s without output"
        elif exit_code != 0:
            tail = "".join(stderr_tail).strip()[-500:]
            error = f"Agent exited with code {exit_code}" + (f": {tail}" if tail else "")
        elif result_event is not None and result_event.is_error:
            error = "Agent reported an error result"

        return RunnerResult(
            success=error is None,
            duration_ms=int(result_event.duration_ms) if result_event and result_event.duration_ms else duration_ms,
            error=error,
            cost_usd=result_event.total_cost_usd if result_event else None,
            num_turns=result_event.num_turns if result_event else None,
        )


# ── Iteration wiring ─────────────────────────────────────────────────────────


def run_single_iteration(
    runner: AgentRunner,
    prompt: str,
    cwd: str | Path,
    iteration: int,
    total_iterations: int = 1,
    on_event: EventCallback | None = None,
) -> IterationResult:
    """Run one agent iteration and summarise it. Failures end up in ``error``."""
    machine = StateMachine(iteration, total_iterations)

    def handle(event: ParserEvent):
        machine.handle(event)
        if on_event:
            on_event(event)

    start = time.monotonic()
    try:
        outcome = runner.run(prompt, cwd, handle)
        error = None if outcome.success else (outcome.error or "Iteration failed")
        duration_ms = outcome.duration_ms or int((time.monotonic() - start) * 1000)
    except Exception as e:
        logger.exception("Iteration %s raised", iteration)
        error = str(e) or e.__class__.__name__
        duration_ms = int((time.monotonic() - start) * 1000)

    state = machine.state
    commit = state.last_commit
    return IterationResult(
        iteration=iteration,
        duration_ms=duration_ms,
        stats=state.stats,
        error=error,
        commit_hash=commit.hash if commit else None,
        commit_message=commit.message if commit else None,
        failure_context=build_failure_context(state.tool_groups, list(state.activity_log)) if error else None,
    )


# ── Prompt and failure context ───────────────────────────────────────────────


def build_iteration_prompt(
    spec: SpecDocument,
    budget: BudgetResult,
    spec_path: str | Path,
) -> str:
    """Build the agent prompt for one iteration from the spec and the selected tasks."""
    parts = []
    parts.append(f"# Spec: {spec.title}")
    parts.append(f"Spec file: {spec_path}")
    if spec.goal:
        parts.append(f"Goal: {spec.goal}")

    if budget.selected_tasks:
        parts.append("\n## Tasks for this iteration")
        for task in budget.selected_tasks:
            resume = " (resume, already in progress)" if task.status == IN_PROGRESS else ""
            parts.append(f"### {task.id}: {task.title} [{task.size}]{resume}")
            for item in task.deliverables:
                parts.append(f"- {item}")
            if task.verify:
                parts.append(f"Verify: `{task.verify}`")
    else:
        parts.append("\n## Tasks for this iteration")
        parts.append("No task fits the budget.")
        upcoming = next_task(spec)
        if upcoming:
            parts.append(f"Next task in order: {upcoming.id}: {upcoming.title} [{upcoming.size}]")

    parts.append(
        "\n## Workflow\n"
        "1. Set the task's status line to `- Status: in_progress` before starting.\n"
        "2. Implement the deliverables with tests.\n"
        "3. Run the task's Verify command and the full test suite.\n"
        "4. Set the status line to `- Status: passed` only when verification succeeds, "
        "or `- Status: failed` if it cannot be completed.\n"
        "5. Commit with the task ID in the message (e.g. \"feat: T001 add login form\")."
    )

    parts.append(
        "\n## Rules\n"
        "- Work only on the tasks listed above.\n"
        "- Do not leave TODO/FIXME stubs or NotImplementedError in completed work.\n"
        "- Do not edit other tasks' status lines."
    )

    return "\n".join(parts)


def format_tool_input(tool_input: dict) -> str:
    """The most telling field of a tool's input, truncated for display."""
    if tool_input.get("command"):
        return f"command: {str(tool_input['command'])[:200]}"
    if tool_input.get("file_path"):
        return f"file: {tool_input['file_path']}"
    if tool_input.get("pattern"):
        return f"pattern: {tool_input['pattern']}"
    if tool_input.get("prompt"):
        return f"prompt: {str(tool_input['prompt'])[:100]}"
    return str(tool_input)[:200]


def _describe_activity(item) -> str:
    if isinstance(item, Thought):
        return f"thought: {item.text[:100]}"
    if isinstance(item, ToolStartActivity):
        return f"start: {item.display_name}"
    if isinstance(item, ToolCompleteActivity):
        mark = "error" if item.is_error else "done"
        return f"{mark}: {item.display_name} ({item.duration_ms / 1000:.1f}s)"
    if isinstance(item, CommitActivity):
        return f"commit: {item.hash[:7]} {item.message}"
    return ""


def build_failure_context(tool_groups: list[ToolGroup], activity_log: list) -> dict | None:
    """Summarise what the agent was doing when an iteration failed."""
    tools = [tool for group in tool_groups for tool in group.tools]
    if not tools and not activity_log:
        return None

    error_tool = next((t for t in tools if t.is_error), tools[-1] if tools else None)
    return {
        "last_tool_name": error_tool.name if error_tool else None,
        "last_tool_input": format_tool_input(error_tool.input) if error_tool and error_tool.input else None,
        "last_tool_output": error_tool.output[:500] if error_tool and error_tool.output else None,
        "recent_activity": [d for d in (_describe_activity(i) for i in activity_log[-5:]) if d],
    }
