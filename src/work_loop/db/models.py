"""Data models for run history."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Run:
    id: int | None = None
    project_dir: str = ""
    spec_path: str | None = None
    model: str | None = None
    status: str = "running"
    exit_code: int | None = None
    iterations: int = 0
    tasks_done: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class IterationRecord:
    id: int | None = None
    run_id: int = 0
    n: int = 0
    duration_ms: int = 0
    stats: dict = field(default_factory=dict)
    error: str | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    created_at: datetime | None = None


@dataclass
class RunEvent:
    id: int | None = None
    run_id: int = 0
    event: str = ""
    payload: dict = field(default_factory=dict)
    created_at: datetime | None = None
