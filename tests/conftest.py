"""Shared test fixtures: isolated state dir and throwaway git repositories."""

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch) -> Path:
    """Keep state, config and git identity away from the developer's machine."""
    state = tmp_path / "_state"
    monkeypatch.setenv("PROVEGATE_DIR", str(state))
    monkeypatch.delenv("PROVEGATE_DISABLED", raising=False)
    monkeypatch.delenv("PROVEGATE_SESSION_ID", raising=False)
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "provegate-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "provegate-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "provegate-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "provegate-tests@example.com")
    return state


@pytest.fixture()
def git() -> Callable[..., str]:
    """Run a git command in a directory and return its stripped stdout."""

    def run(cwd: Path, *args: str) -> str:
        result = subprocess.run(
            ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
        )
        return result.stdout.strip()

    return run


@pytest.fixture()
def repo(tmp_path: Path, git) -> Path:
    """A repository with one commit holding ``README.md``."""
    project = tmp_path / "project"
    project.mkdir()
    git(project, "init", "-q")
    git(project, "config", "commit.gpgsign", "false")
    (project / "README.md").write_text("hello\n")
    git(project, "add", "-A")
    git(project, "commit", "-q", "-m", "init")
    return project


@pytest.fixture()
def commit(git) -> Callable[..., str]:
    """Write files, commit everything, return the new HEAD sha."""

    def run(cwd: Path, files: dict[str, str], message: str = "change") -> str:
        for rel, content in files.items():
            path = cwd / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        git(cwd, "add", "-A")
        git(cwd, "commit", "-q", "-m", message)
        return git(cwd, "rev-parse", "HEAD")

    return run
