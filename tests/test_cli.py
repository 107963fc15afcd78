"""Tests for the CLI."""

import json
import os
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from work_loop.cli import main

SPEC = """\
# Demo

Goal: Exercise the CLI.

### T001: Parser
- Status: pending
- Size: S

### T002: Writer
- Status: pending
- Size: S
- Depends on: T001
"""

# Marks the first pending task as passed and reports a commit, like a well-behaved agent.
FAKE_AGENT = """\
#!{python}
import json
import pathlib

spec = pathlib.Path("specs/active/demo.md")
text = spec.read_text()
spec.write_text(text.replace("- Status: pending", "- Status: passed", 1))

print(json.dumps({{"type": "system", "subtype": "init", "session_id": "s1", "model": "test"}}))
print(json.dumps({{"type": "assistant", "message": {{"content": [
    {{"type": "tool_use", "id": "t1", "name": "Bash", "input": {{"command": "git commit -am done"}}}},
]}}}}))
print(json.dumps({{"type": "user", "message": {{"content": [
    {{"type": "tool_result", "tool_use_id": "t1", "content": "[main abc1234] feat: done"}},
]}}}}))
print(json.dumps({{"type": "result", "is_error": False, "duration_ms": 10}}))
"""

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


@pytest.fixture
def cli_env():
    """Set up a temp project, history database and fake agent for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        repo_path = Path(tmp) / "repo"
        active = repo_path / "specs" / "active"
        active.mkdir(parents=True)
        (active / "demo.md").write_text(SPEC)

        subprocess.run(["git", "init"], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(["git", "add", "."], cwd=repo_path, capture_output=True, check=True)
        subprocess.run(
            ["git", "commit", "-m", "init"],
            cwd=repo_path, capture_output=True, check=True, env=GIT_ENV,
        )

        agent = Path(tmp) / "fake-agent"
        agent.write_text(FAKE_AGENT.format(python=sys.executable))
        agent.chmod(0o755)

        env = {
            "WL_DB_PATH": str(db_path),
            "WL_CLAUDE_BIN": str(agent),
            "WL_SPECS_DIR": None,
            "WL_BUDGET": None,
            "WL_IDLE_TIMEOUT": "30",
            "SLACK_BOT_TOKEN": None,
            "WL_SLACK_CHANNEL": None,
        }
        yield CliRunner(env=env), repo_path


def json_events(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


class TestCLI:
    def test_help(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "supervise a coding agent" in result.output


class TestSpecCommands:
    def test_status(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["status", "--cwd", str(repo)])
        assert result.exit_code == 0
        assert "Demo" in result.output
        assert "Progress: 0/2 (0%)" in result.output
        assert "T002: Writer [S] (pending) [depends: T001]" in result.output

    def test_status_json(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["status", "--cwd", str(repo), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total"] == 2
        assert [t["id"] for t in data["tasks"]] == ["T001", "T002"]
        assert data["tasks"][1]["depends_on"] == ["T001"]

    def test_status_without_spec(self, cli_env):
        runner, _ = cli_env
        with tempfile.TemporaryDirectory() as empty:
            result = runner.invoke(main, ["status", "--cwd", empty])
        assert result.exit_code == 1
        assert "No spec found" in result.output

    def test_status_legacy(self, cli_env):
        runner, repo = cli_env
        (repo / "specs" / "active" / "demo.md").write_text("# Old\n\n- [ ] thing\n")
        result = runner.invoke(main, ["status", "--cwd", str(repo)])
        assert result.exit_code == 1
        assert "Legacy spec format" in result.output

    def test_plan(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["plan", "--cwd", str(repo)])
        assert result.exit_code == 0
        assert "Selected 1 task(s) (1 points):" in result.output
        assert "T002 blocked: depends on T001 (pending)" in result.output


class TestRunCommand:
    def test_run_to_completion(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["run", "-n", "5", "--cwd", str(repo)])
        assert result.exit_code == 0, result.output

        events = json_events(result.stdout)
        names = [e["event"] for e in events]
        assert names[0] == "started"
        assert names[-1] == "complete"
        assert names.count("iteration_done") == 2
        assert [e["text"] for e in events if e["event"] == "task_complete"] == ["T001: Parser", "T002: Writer"]
        tool = next(e for e in events if e["event"] == "tool")
        assert (tool["category"], tool["name"], tool["display"]) == ("command", "Bash", "git")

        runs = runner.invoke(main, ["runs"])
        assert "[COMPLETE] iterations=2 tasks_done=2" in runs.output

        commits = runner.invoke(main, ["events", "1", "--event", "commit"])
        lines = [json.loads(line) for line in commits.output.splitlines()]
        assert [line["hash"] for line in lines] == ["abc1234", "abc1234"]

    def test_run_hits_iteration_cap(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["run", "--cwd", str(repo), "--no-history"])
        assert result.exit_code == 2
        assert [e["event"] for e in json_events(result.stdout)][-1] == "iteration_done"

    def test_run_refuses_dirty_tree(self, cli_env):
        runner, repo = cli_env
        (repo / "scratch.txt").write_text("wip")
        result = runner.invoke(main, ["run", "--cwd", str(repo)])
        assert result.exit_code == 3
        assert "Uncommitted changes detected" in result.output

        result = runner.invoke(main, ["run", "--cwd", str(repo), "--allow-dirty", "--no-history"])
        assert result.exit_code == 2

    def test_run_with_prompt(self, cli_env):
        runner, repo = cli_env
        recording = repo.parent / "argv-agent"
        recording.write_text(
            f"#!{sys.executable}\nimport json, pathlib, sys\n"
            f"pathlib.Path({str(repo.parent / 'argv.json')!r}).write_text(json.dumps(sys.argv[1:]))\n"
        )
        recording.chmod(0o755)

        result = runner.invoke(
            main, ["run", "--cwd", str(repo), "--no-history", "--prompt", "Fix the parser"],
            env={"WL_CLAUDE_BIN": str(recording)},
        )
        assert result.exit_code == 2, result.output
        argv = json.loads((repo.parent / "argv.json").read_text())
        assert argv[:2] == ["-p", "Fix the parser"]

    def test_run_with_prompt_file(self, cli_env):
        runner, repo = cli_env
        (repo.parent / "prompt.md").write_text("Only T001 please")
        result = runner.invoke(
            main, ["run", "--cwd", str(repo), "--no-history", "--prompt-file", "../prompt.md", "-n", "5"]
        )
        assert result.exit_code == 0, result.output
        assert [e["event"] for e in json_events(result.stdout)][-1] == "complete"

    def test_run_missing_prompt_file(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(main, ["run", "--cwd", str(repo), "--prompt-file", "nope.md"])
        assert result.exit_code == 3
        assert f"Prompt file not found: {repo / 'nope.md'}" in result.output

    def test_run_saves_agent_output(self, cli_env):
        runner, repo = cli_env
        result = runner.invoke(
            main, ["run", "--cwd", str(repo), "--no-history", "--save-jsonl", "../out/session.jsonl"]
        )
        assert result.exit_code == 2, result.output
        lines = [json.loads(line) for line in (repo.parent / "out" / "session.jsonl").read_text().splitlines()]
        assert [line["type"] for line in lines] == ["system", "assistant", "user", "result"]

    def test_status_unreadable_spec(self, cli_env):
        runner, repo = cli_env
        (repo / "specs" / "active" / "demo.md").write_bytes(SPEC.encode() + b"\xff\xfe caf\xe9")
        result = runner.invoke(main, ["status", "--cwd", str(repo)])
        assert result.exit_code == 1
        assert "Could not read spec" in result.output

    def test_run_agent_failure(self, cli_env):
        runner, repo = cli_env
        broken = repo.parent / "broken-agent"
        broken.write_text(f"#!{sys.executable}\nimport sys\nsys.stderr.write('crashed')\nsys.exit(4)\n")
        broken.chmod(0o755)

        result = runner.invoke(main, ["run", "--cwd", str(repo)], env={"WL_CLAUDE_BIN": str(broken)})
        assert result.exit_code == 3
        failed = json_events(result.stdout)[-1]
        assert failed["event"] == "failed"
        assert failed["error"] == "Agent exited with code 4: crashed"

        runs = runner.invoke(main, ["runs", "--status", "failed"])
        assert "[FAILED] iterations=1" in runs.output

    def test_run_crash_still_finishes_history(self, cli_env):
        runner, repo = cli_env
        crash = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        with patch("work_loop.core.loop.execute_run", side_effect=crash):
            result = runner.invoke(main, ["run", "--cwd", str(repo)])
        assert result.exit_code == 3
        assert "Error:" in result.output

        runs = runner.invoke(main, ["runs", "--status", "failed"])
        assert "[FAILED]" in runs.output


class TestHistoryCommands:
    def test_runs_empty(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["runs"])
        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_events_unknown_run(self, cli_env):
        runner, _ = cli_env
        result = runner.invoke(main, ["events", "99"])
        assert result.exit_code == 1
        assert "Run not found: 99" in result.output
