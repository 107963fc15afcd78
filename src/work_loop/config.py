"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

# Activity log retention for one iteration
ACTIVITY_LOG_LIMIT = 50

# Display truncation limits
TASK_TEXT_LIMIT = 100
TOOL_DISPLAY_NAME_LIMIT = 20

DEFAULT_BUDGET_POINTS = 4
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_STUCK_THRESHOLD = 3
DEFAULT_IDLE_TIMEOUT = 120.0


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".work_loop" / "wl.db")
    specs_dir: str = "specs/active"
    claude_bin: str = "claude"
    model: str | None = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    stuck_threshold: int = DEFAULT_STUCK_THRESHOLD
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    budget_points: int = DEFAULT_BUDGET_POINTS
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WL_DB_PATH"):
            config.db_path = Path(db)

        if specs_dir := os.environ.get("WL_SPECS_DIR"):
            config.specs_dir = specs_dir

        if claude_bin := os.environ.get("WL_CLAUDE_BIN"):
            config.claude_bin = claude_bin

        if model := os.environ.get("WL_MODEL"):
            config.model = model

        if max_iterations := os.environ.get("WL_MAX_ITERATIONS"):
            config.max_iterations = int(max_iterations)

        if stuck := os.environ.get("WL_STUCK_THRESHOLD"):
            config.stuck_threshold = int(stuck)

        if idle := os.environ.get("WL_IDLE_TIMEOUT"):
            config.idle_timeout = float(idle)

        if budget := os.environ.get("WL_BUDGET"):
            config.budget_points = int(budget)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("WL_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
