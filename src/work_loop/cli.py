"""CLI entry point for work loop."""

import json
import logging
import os
import sys

import click

from work_loop.config import get_config
from work_loop.core import history as history_mod
from work_loop.core import loop as loop_mod
from work_loop.core import specs as specs_mod
from work_loop.core.budget import format_budget_summary, select_tasks
from work_loop.core.events import EventEmitter, HistorySink, JsonLinesSink, SlackSink
from work_loop.db.engine import get_db


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _load_active_spec(cwd: str) -> specs_mod.SpecDocument:
    """Locate and parse the active spec, exiting with an error message on failure."""
    config = get_config()
    try:
        path = specs_mod.locate_active_spec(cwd, config.specs_dir)
    except specs_mod.SpecLocatorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    spec = specs_mod.load_spec(path)
    if isinstance(spec, specs_mod.LegacySpec):
        click.echo(f"Error: {spec.warning}", err=True)
        sys.exit(1)
    if isinstance(spec, specs_mod.MissingSpec):
        click.echo(f"Error: Could not read spec: {spec.path}", err=True)
        sys.exit(1)
    return spec


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log diagnostics to stderr")
def main(verbose):
    """wl - supervise a coding agent through a task spec"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ── Run Command ───────────────────────────────────────────────────────────────


@main.command("run")
@click.option("--iterations", "-n", default=1, type=int, help="Number of iterations to run")
@click.option("--all", "run_all", is_flag=True, help="Run until the spec is done (up to WL_MAX_ITERATIONS)")
@click.option("--stuck-threshold", type=int, default=None, help="Stop after N iterations without progress")
@click.option("--idle-timeout", type=float, default=None, help="Kill the agent after N seconds without output")
@click.option("--budget", type=int, default=None, help="Size points per iteration (S=1, M=2, L=4)")
@click.option("--conservative", is_flag=True, help="At most one M/L task per iteration")
@click.option("--model", default=None, help="Model passed to the agent")
@click.option("--cwd", default=".", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.option("--history/--no-history", default=True, help="Record the run in the history database")
@click.option("--allow-dirty", is_flag=True, help="Run even with uncommitted changes")
@click.option("--prompt", "-p", default=None, help="Use this prompt instead of one built from the spec")
@click.option("--prompt-file", default=None, help="Read the prompt from a file (relative to --cwd)")
@click.option("--save-jsonl", default=None, help="Append the agent's raw output lines to this file")
def run_command(
    iterations, run_all, stuck_threshold, idle_timeout, budget,
    conservative, model, cwd, history, allow_dirty, prompt, prompt_file, save_jsonl,
):
    """Run the agent loop against the active spec. Emits JSON lines on stdout."""
    config = get_config()
    cwd = os.path.abspath(cwd)

    errors = loop_mod.validate_project(cwd, config.specs_dir, allow_dirty=allow_dirty)
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(loop_mod.EXIT_CODE_ERROR)

    if prompt_file:
        prompt_path = os.path.join(cwd, prompt_file)
        if not os.path.isfile(prompt_path):
            click.echo(f"Error: Prompt file not found: {prompt_path}", err=True)
            sys.exit(loop_mod.EXIT_CODE_ERROR)
        with open(prompt_path, encoding="utf-8") as f:
            prompt = f.read()

    options = loop_mod.RunOptions(
        cwd=cwd,
        iterations=config.max_iterations if run_all else iterations,
        stuck_threshold=stuck_threshold or config.stuck_threshold,
        idle_timeout=idle_timeout if idle_timeout is not None else config.idle_timeout,
        budget_points=budget or config.budget_points,
        conservative=conservative,
        model=model or config.model,
        claude_bin=config.claude_bin,
        specs_dir=config.specs_dir,
        spec_path=str(specs_mod.locate_active_spec(cwd, config.specs_dir)),
        prompt=prompt,
        save_jsonl=os.path.join(cwd, save_jsonl) if save_jsonl else None,
    )

    emitter = EventEmitter([JsonLinesSink()])
    if config.slack_bot_token and config.slack_channel:
        emitter.add_sink(SlackSink(config.slack_bot_token, config.slack_channel, options.spec_path))

    if not history:
        sys.exit(loop_mod.execute_run(options, emitter))

    with _get_db() as db:
        run = history_mod.create_run(db, cwd, options.spec_path, options.model)
        emitter.add_sink(HistorySink(db, run.id))
        try:
            exit_code = loop_mod.execute_run(options, emitter)
        except Exception as e:
            click.echo(f"Error: {e}", err=True)
            exit_code = loop_mod.EXIT_CODE_ERROR
        progress = specs_mod.get_progress(options.spec_path)
        history_mod.finish_run(
            db, run.id,
            status=loop_mod.OUTCOMES[exit_code],
            exit_code=exit_code,
            tasks_done=progress.completed if progress else None,
        )
    sys.exit(exit_code)


# ── Spec Commands ─────────────────────────────────────────────────────────────


@main.command("status")
@click.option("--cwd", default=".", type=click.Path(exists=True, file_okay=False), help="Project directory")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status_command(cwd, json_output):
    """Show progress of the active spec."""
    spec = _load_active_spec(cwd)
    progress = specs_mod.spec_progress(spec)

    if json_output:
        click.echo(json.dumps({
            "title": spec.title,
            "path": spec.path,
            "completed": progress.completed,
            "total": progress.total,
            "percentage": progress.percentage,
            "tasks": [_task_dict(t) for t in spec.tasks],
        }, indent=2))
        return

    status_icons = {
        specs_mod.PENDING: "○",
        specs_mod.IN_PROGRESS: "●",
        specs_mod.PASSED: "✓",
        specs_mod.FAILED: "✗",
    }

    click.echo(f"{spec.title} ({spec.path})")
    click.echo(f"  Progress: {progress.completed}/{progress.total} ({progress.percentage}%)")
    for task in spec.tasks:
        icon = status_icons.get(task.status, "?")
        deps = f" [depends: {', '.join(task.dependencies)}]" if task.dependencies else ""
        click.echo(f"  {icon} {task.id}: {task.title} [{task.size}] ({task.status}){deps}")


@main.command("plan")
@click.option("--budget", type=int, default=None, help="Size points per iteration")
@click.option("--conservative", is_flag=True, help="At most one M/L task per iteration")
@click.option("--cwd", default=".", type=click.Path(exists=True, file_okay=False), help="Project directory")
def plan_command(budget, conservative, cwd):
    """Show which tasks the next iteration would attempt."""
    config = get_config()
    spec = _load_active_spec(cwd)
    result = select_tasks(spec.tasks, budget or config.budget_points, conservative)
    click.echo(format_budget_summary(result))


# ── History Commands ──────────────────────────────────────────────────────────


@main.command("runs")
@click.option("--status", default=None, help="Filter: running, complete, stuck, max_iterations, failed")
@click.option("--limit", default=20, type=int, help="Maximum number of runs to show")
def runs_command(status, limit):
    """List recorded runs."""
    with _get_db() as db:
        runs = history_mod.list_runs(db, status=status, limit=limit)
        if not runs:
            click.echo("No runs found.")
            return
        for run in runs:
            click.echo(
                f"  #{run.id} [{run.status.upper()}] iterations={run.iterations} "
                f"tasks_done={run.tasks_done} spec={run.spec_path}"
            )


@main.command("events")
@click.argument("run_id", type=int)
@click.option("--event", default=None, help="Only show events of this kind")
def events_command(run_id, event):
    """Show the lifecycle events recorded for a run."""
    with _get_db() as db:
        run = history_mod.get_run(db, run_id)
        if not run:
            click.echo(f"Run not found: {run_id}", err=True)
            sys.exit(1)
        for item in history_mod.list_run_events(db, run_id, event=event):
            click.echo(json.dumps({"event": item.event, **item.payload}, default=str))


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "size": task.size,
        "points": task.size_points,
        "deliverables": task.deliverables,
        "verify": task.verify,
        "depends_on": task.dependencies,
    }


if __name__ == "__main__":
    main()
