"""Shared fixtures: temporary git repositories, databases and stand-in workers."""

import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from kanban_orchestrator.db.engine import init_db


def git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(monkeypatch):
    """Commits in tests need an author regardless of the host's git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@test.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@test.com")


@pytest.fixture
def git_repo(tmp_path):
    """A repository on ``main`` with one commit and no remote."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    (repo / "README.md").write_text("# Test")
    git(repo, "add", ".")
    git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture
def origin(tmp_path, git_repo):
    """A bare ``origin`` remote for ``git_repo`` with ``main`` pushed."""
    bare = tmp_path / "origin.git"
    git(tmp_path, "init", "--bare", str(bare))
    git(git_repo, "remote", "add", "origin", str(bare))
    git(git_repo, "push", "origin", "main")
    return bare


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "test.db")
    yield conn
    conn.close()


@pytest.fixture
def make_worker(tmp_path):
    """Write an executable Python script standing in for the worker CLI."""
    counter = {"n": 0}

    def factory(body: str) -> Path:
        counter["n"] += 1
        script = tmp_path / f"worker-{counter['n']}"
        script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        script.chmod(0o755)
        return script

    return factory
