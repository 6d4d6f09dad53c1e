from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

import pytest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def run_git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    )
    return completed.stdout.strip()


@dataclass
class GitFixture:
    repo: Path
    remote: Path
    root: Path

    def commit_file(self, cwd: Path, name: str, content: str, message: str) -> None:
        (cwd / name).write_text(content, encoding="utf-8")
        run_git(cwd, "add", name)
        run_git(cwd, "commit", "-m", message)


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_AUTHOR_NAME", "eksecd tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@eksecd.invalid")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "eksecd tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@eksecd.invalid")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(tmp_path / "gitconfig"))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def git_repo(tmp_path: Path, git_env: None) -> GitFixture:
    """A repository on ``main`` with one commit, pushed to a local bare remote."""

    remote = tmp_path / "remote.git"
    repo = tmp_path / "repo"
    run_git(tmp_path, "-c", "init.defaultBranch=main", "init", "--bare", str(remote))
    run_git(tmp_path, "-c", "init.defaultBranch=main", "init", str(repo))
    fixture = GitFixture(repo=repo, remote=remote, root=tmp_path)
    fixture.commit_file(repo, "README.md", "hello\n", "initial commit")
    run_git(repo, "remote", "add", "origin", str(remote))
    run_git(repo, "push", "-u", "origin", "main")
    return fixture
