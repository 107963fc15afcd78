"""Run history: one row per run, per iteration and per lifecycle event."""

import json
import sqlite3
from datetime import datetime

from work_loop.db.models import IterationRecord, Run, RunEvent

RUN_STATUSES = ("running", "complete", "stuck", "max_iterations", "failed")


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        project_dir=row["project_dir"],
        spec_path=row["spec_path"],
        model=row["model"],
        status=row["status"],
        exit_code=row["exit_code"],
        iterations=row["iterations"],
        tasks_done=row["tasks_done"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_iteration(row: sqlite3.Row) -> IterationRecord:
    return IterationRecord(
        id=row["id"],
        run_id=row["run_id"],
        n=row["n"],
        duration_ms=row["duration_ms"],
        stats=json.loads(row["stats"] or "{}"),
        error=row["error"],
        commit_hash=row["commit_hash"],
        commit_message=row["commit_message"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_event(row: sqlite3.Row) -> RunEvent:
    return RunEvent(
        id=row["id"],
        run_id=row["run_id"],
        event=row["event"],
        payload=json.loads(row["payload"] or "{}"),
        created_at=_parse_dt(row["created_at"]),
    )


def create_run(
    db: sqlite3.Connection,
    project_dir: str,
    spec_path: str | None = None,
    model: str | None = None,
) -> Run:
    """Record the start of a run."""
    cursor = db.execute(
        "INSERT INTO runs (project_dir, spec_path, model) VALUES (?, ?, ?)",
        (project_dir, spec_path, model),
    )
    db.commit()
    return get_run(db, cursor.lastrowid)


def finish_run(
    db: sqlite3.Connection,
    run_id: int,
    status: str,
    exit_code: int,
    tasks_done: int | None = None,
) -> Run:
    """Record a run's outcome."""
    if status not in RUN_STATUSES:
        raise ValueError(f"Invalid status '{status}'. Must be one of: {', '.join(RUN_STATUSES)}")
    run = get_run(db, run_id)
    if not run:
        raise ValueError(f"Run not found: {run_id}")

    db.execute(
        """UPDATE runs
           SET status = ?, exit_code = ?, tasks_done = COALESCE(?, tasks_done),
               completed_at = datetime('now')
           WHERE id = ?""",
        (status, exit_code, tasks_done, run_id),
    )
    db.commit()
    return get_run(db, run_id)


def record_iteration(
    db: sqlite3.Connection,
    run_id: int,
    n: int,
    duration_ms: int,
    stats: dict,
    error: str | None = None,
    commit_hash: str | None = None,
    commit_message: str | None = None,
) -> IterationRecord:
    """Store one finished iteration and bump the run's iteration count."""
    db.execute(
        """INSERT OR REPLACE INTO iterations
           (run_id, n, duration_ms, stats, error, commit_hash, commit_message)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (run_id, n, duration_ms, json.dumps(stats), error, commit_hash, commit_message),
    )
    db.execute(
        "UPDATE runs SET iterations = MAX(iterations, ?) WHERE id = ?",
        (n, run_id),
    )
    db.commit()
    row = db.execute(
        "SELECT * FROM iterations WHERE run_id = ? AND n = ?", (run_id, n)
    ).fetchone()
    return _row_to_iteration(row)


def record_event(db: sqlite3.Connection, run_id: int, event: str, payload: dict) -> None:
    db.execute(
        "INSERT INTO run_events (run_id, event, payload) VALUES (?, ?, ?)",
        (run_id, event, json.dumps(payload, default=str)),
    )
    db.commit()


def get_run(db: sqlite3.Connection, run_id: int) -> Run | None:
    row = db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    if not row:
        return None
    return _row_to_run(row)


def list_runs(
    db: sqlite3.Connection,
    status: str | None = None,
    limit: int = 20,
) -> list[Run]:
    """List runs, newest first, optionally filtered by status."""
    query = "SELECT * FROM runs"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(query, params).fetchall()
    return [_row_to_run(r) for r in rows]


def list_iterations(db: sqlite3.Connection, run_id: int) -> list[IterationRecord]:
    rows = db.execute(
        "SELECT * FROM iterations WHERE run_id = ? ORDER BY n ASC", (run_id,)
    ).fetchall()
    return [_row_to_iteration(r) for r in rows]


def list_run_events(
    db: sqlite3.Connection,
    run_id: int,
    event: str | None = None,
) -> list[RunEvent]:
    query = "SELECT * FROM run_events WHERE run_id = ?"
    params: list = [run_id]
    if event:
        query += " AND event = ?"
        params.append(event)
    query += " ORDER BY id ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_event(r) for r in rows]
