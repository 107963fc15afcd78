"""Tests for git helpers and stub detection."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from work_loop.core.stubs import detect_todo_stubs, has_stub_markers
from work_loop.integrations import git as git_mod

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


def commit_all(repo: Path, message: str):
    subprocess.run(["git", "add", "."], cwd=repo, capture_output=True, check=True)
    subprocess.run(["git", "commit", "-m", message], cwd=repo, capture_output=True, check=True, env=GIT_ENV)


@pytest.fixture
def git_repo():
    """Create a temporary git repo with an initial commit."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp)
        subprocess.run(["git", "init"], cwd=repo, capture_output=True, check=True)
        subprocess.run(["git", "checkout", "-b", "main"], cwd=repo, capture_output=True, check=True)
        (repo / "README.md").write_text("# Test")
        commit_all(repo, "init")
        yield repo


class TestGit:
    def test_is_git_repo(self, git_repo):
        assert git_mod.is_git_repo(git_repo) is True
        with tempfile.TemporaryDirectory() as tmp:
            assert git_mod.is_git_repo(tmp) is False

    def test_uncommitted_changes(self, git_repo):
        assert git_mod.has_uncommitted_changes(git_repo) is False
        (git_repo / "new.txt").write_text("x")
        assert git_mod.has_uncommitted_changes(git_repo) is True

    def test_changed_files_last_commit(self, git_repo):
        (git_repo / "a.py").write_text("x = 1\n")
        commit_all(git_repo, "add a")
        assert git_mod.changed_files(git_repo) == ["a.py"]

    def test_run_git_error(self, git_repo):
        with pytest.raises(git_mod.GitError, match="git rev-parse"):
            git_mod.run_git(["rev-parse", "no-such-ref"], cwd=git_repo)


class TestStubMarkers:
    @pytest.mark.parametrize(
        "content",
        [
            "# TODO: finish",
            "x = 1  # fixme: later",
            "// TODO: wire up",
            "throw new Error('Not implemented')",
            "    raise NotImplementedError",
        ],
    )
    def test_detected(self, content):
        assert has_stub_markers(content) is True

    @pytest.mark.parametrize("content", ["x = 1", "# TODO without colon", "todo_list = []"])
    def test_clean(self, content):
        assert has_stub_markers(content) is False


class TestDetectTodoStubs:
    def test_finds_stubbed_source_in_last_commit(self, git_repo):
        (git_repo / "done.py").write_text("def f():\n    return 1\n")
        (git_repo / "stub.py").write_text("def g():\n    raise NotImplementedError\n")
        (git_repo / "notes.md").write_text("TODO: write docs\n# TODO: more\n")
        commit_all(git_repo, "work")
        assert detect_todo_stubs(git_repo) == ["stub.py"]

    def test_deleted_files_skipped(self, git_repo):
        (git_repo / "old.py").write_text("# TODO: remove\n")
        commit_all(git_repo, "add")
        (git_repo / "old.py").unlink()
        commit_all(git_repo, "remove")
        assert detect_todo_stubs(git_repo) == []

    def test_not_a_repo(self):
        with tempfile.TemporaryDirectory() as tmp:
            assert detect_todo_stubs(tmp) == []
