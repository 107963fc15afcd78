"""The iteration control loop.

Drives a bounded sequence of agent iterations against the active spec.
After each iteration it re-reads the spec, reports newly passed tasks and
decides whether to stop: on an iteration error, when no task has passed for
``stuck_threshold`` iterations in a row, when every task is passed or failed,
or when the iteration cap is reached.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from work_loop.config import DEFAULT_BUDGET_POINTS, DEFAULT_IDLE_TIMEOUT, DEFAULT_STUCK_THRESHOLD
from work_loop.core.budget import select_tasks
from work_loop.core.events import EventEmitter
from work_loop.core.runner import (
    AgentRunner,
    ClaudeRunner,
    IterationResult,
    build_iteration_prompt,
    run_single_iteration,
)
from work_loop.core.specs import (
    PASSED,
    LegacySpec,
    MissingSpec,
    SpecDocument,
    SpecLocatorError,
    is_spec_done,
    load_spec,
    locate_active_spec,
    spec_progress,
)
from work_loop.core.stream import ParserEvent, ToolStartEvent
from work_loop.core.stubs import detect_todo_stubs
from work_loop.core.tools import get_tool_category, get_tool_display_name
from work_loop.integrations import git as git_mod

logger = logging.getLogger(__name__)

EXIT_CODE_COMPLETE = 0
EXIT_CODE_STUCK = 1
EXIT_CODE_MAX_ITERATIONS = 2
EXIT_CODE_ERROR = 3

OUTCOMES = {
    EXIT_CODE_COMPLETE: "complete",
    EXIT_CODE_STUCK: "stuck",
    EXIT_CODE_MAX_ITERATIONS: "max_iterations",
    EXIT_CODE_ERROR: "failed",
}


@dataclass
class RunOptions:
    cwd: str
    iterations: int
    stuck_threshold: int = DEFAULT_STUCK_THRESHOLD
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    budget_points: int = DEFAULT_BUDGET_POINTS
    conservative: bool = False
    model: str | None = None
    claude_bin: str = "claude"
    specs_dir: str = "specs/active"
    spec_path: str | None = None
    prompt: str | None = None
    save_jsonl: str | None = None


IterationFn = Callable[[RunOptions, int, EventEmitter], IterationResult]


def validate_project(cwd: str, specs_dir: str = "specs/active", allow_dirty: bool = False) -> list[str]:
    """Problems that must be fixed before a run can start. Empty when ready."""
    errors = []
    if not allow_dirty and git_mod.is_git_repo(cwd) and git_mod.has_uncommitted_changes(cwd):
        errors.append("Uncommitted changes detected. Commit or stash before running.")

    try:
        spec_path = locate_active_spec(cwd, specs_dir)
    except SpecLocatorError as e:
        errors.append(str(e))
        return errors

    loaded = load_spec(spec_path)
    if isinstance(loaded, MissingSpec):
        errors.append(f"Could not read {spec_path.name} as UTF-8 text.")
    elif isinstance(loaded, LegacySpec):
        errors.append(f"{spec_path.name} uses the legacy checkbox format. Migrate to task IDs (T001, T002).")
    return errors


def _passed_ids(spec: SpecDocument | None) -> set[str]:
    if spec is None:
        return set()
    return {t.id for t in spec.tasks if t.status == PASSED}


def _read_spec(spec_path: Path) -> SpecDocument | None:
    """Current spec contents, or None if it is missing, unreadable or in the legacy format."""
    spec = load_spec(spec_path)
    return spec if isinstance(spec, SpecDocument) else None


def make_iteration(runner: AgentRunner) -> IterationFn:
    """Build the default per-iteration step around an agent runner."""

    def iterate(options: RunOptions, n: int, emitter: EventEmitter) -> IterationResult:
        spec_path = Path(options.spec_path)
        prompt = options.prompt
        if prompt is None:
            spec = _read_spec(spec_path)
            if spec is None:
                raise ValueError(f"Spec is missing, unreadable or in the legacy format: {spec_path}")
            budget = select_tasks(spec.tasks, options.budget_points, options.conservative)
            for warning in budget.warnings:
                emitter.warning("budget", warning)
            prompt = build_iteration_prompt(spec, budget, spec_path)

        def on_event(event: ParserEvent):
            if isinstance(event, ToolStartEvent):
                emitter.tool(
                    get_tool_category(event.tool_name),
                    event.tool_name,
                    get_tool_display_name(event.tool_name, event.input),
                )

        return run_single_iteration(
            runner, prompt, options.cwd, n,
            total_iterations=options.iterations,
            on_event=on_event,
        )

    return iterate


def execute_run(
    options: RunOptions,
    emitter: EventEmitter | None = None,
    iterate: IterationFn | None = None,
    detect_stubs: Callable[[str], list[str]] = detect_todo_stubs,
) -> int:
    """Run iterations until the spec is done, the agent is stuck, or the cap is hit.

    Returns one of the EXIT_CODE_* values.
    """
    emitter = emitter or EventEmitter()
    if iterate is None:
        iterate = make_iteration(
            ClaudeRunner(
                options.claude_bin, options.model, options.idle_timeout, save_jsonl=options.save_jsonl
            )
        )

    if options.spec_path is None:
        try:
            options.spec_path = str(locate_active_spec(options.cwd, options.specs_dir))
        except SpecLocatorError as e:
            emitter.failed(str(e))
            return EXIT_CODE_ERROR
    spec_path = Path(options.spec_path)

    loaded = load_spec(spec_path)
    if isinstance(loaded, LegacySpec):
        logger.warning("Legacy spec format in %s", spec_path)
        emitter.warning("legacy_spec", loaded.warning)
    spec = loaded if isinstance(loaded, SpecDocument) else None

    progress = spec_progress(spec) if spec else None
    emitter.started(str(spec_path), progress.total if progress else 0, options.model)

    last_completed = progress.completed if progress else 0
    passed_before = _passed_ids(spec)
    without_progress = 0
    run_start = time.monotonic()

    for n in range(1, options.iterations + 1):
        emitter.iteration(n, "starting")

        try:
            result = iterate(options, n, emitter)
        except Exception as e:
            logger.exception("Iteration %s could not run", n)
            emitter.failed(str(e), n=n)
            return EXIT_CODE_ERROR

        if result.error:
            emitter.failed(
                result.error,
                result.failure_context,
                n=n,
                duration_ms=result.duration_ms,
                stats=result.stats.to_dict(),
            )
            return EXIT_CODE_ERROR

        spec = _read_spec(spec_path)
        current = spec_progress(spec).completed if spec else 0
        newly_completed = current - last_completed

        if newly_completed > 0:
            newly_passed = _passed_ids(spec) - passed_before
            labels = [f"{t.id}: {t.title}" for t in spec.tasks if t.id in newly_passed]
            for j in range(newly_completed):
                index = last_completed + j + 1
                emitter.task_complete(index, labels[j] if j < len(labels) else f"Task {index}")

            stubs = detect_stubs(options.cwd)
            if stubs:
                emitter.warning("todo_stub", "Completed tasks contain TODO/FIXME stubs", stubs)
            without_progress = 0
            last_completed = current
        else:
            without_progress += 1
        passed_before = _passed_ids(spec)

        if result.commit_hash and result.commit_message:
            emitter.commit(result.commit_hash, result.commit_message)

        emitter.iteration_done(n, result.duration_ms, result.stats)

        if without_progress >= options.stuck_threshold:
            emitter.stuck("No task progress", without_progress)
            return EXIT_CODE_STUCK

        if spec is not None and is_spec_done(spec):
            emitter.complete(current, int((time.monotonic() - run_start) * 1000))
            return EXIT_CODE_COMPLETE

    logger.info("Reached %s iterations without completing %s", options.iterations, spec_path)
    return EXIT_CODE_MAX_ITERATIONS
