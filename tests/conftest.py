"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import shutil
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

import pytest

from agent_sandbox.sandbox.git import GitClient
from agent_sandbox.sandbox.models import RevertFailure

ECHO_AGENT_COMMAND = f"{shlex.quote(sys.executable)} -m agent_sandbox.sandbox.echo_agent"


def python_command(code: str) -> str:
    """Shell command running ``code`` with the test interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout


def write_providers(repo: Path, providers: dict[str, str], *, default: str) -> None:
    config_path = repo / "ai" / "config" / "providers.json"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        json.dumps(
            {
                "default": default,
                "providers": [{"name": name, "cli": cli} for name, cli in providers.items()],
            },
        ),
        "utf-8",
    )


def write_whitelist(repo: Path, task_id: str, entries: Sequence[str]) -> None:
    path = repo / "ai" / "tasks" / task_id / "whitelist.txt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(entries) + "\n", "utf-8")


class RecordingGit(GitClient):
    """GitClient that records revert calls instead of touching a repository."""

    def __init__(self, failing: Sequence[str] = ()) -> None:
        super().__init__()
        self.revert_calls: list[list[str]] = []
        self.failing = set(failing)

    def revert(self, cwd: Path, paths: Sequence[str]) -> list[RevertFailure]:
        self.revert_calls.append(list(paths))
        return [
            RevertFailure(path=path, operation="checkout", message="simulated failure")
            for path in paths
            if path in self.failing
        ]


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Committed repository with ``README.md``, ``src/app.py`` and ``lib/util.py``."""

    if shutil.which("git") is None:
        pytest.skip("git executable not available")

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "--quiet")
    git(repo, "config", "user.email", "tests@example.com")
    git(repo, "config", "user.name", "Tests")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("readme\n", "utf-8")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("print('app')\n", "utf-8")
    (repo / "lib").mkdir()
    (repo / "lib" / "util.py").write_text("VALUE = 1\n", "utf-8")
    (repo / ".gitignore").write_text("", "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", "initial")
    return repo


@pytest.fixture()
def echo_repo(git_repo: Path) -> Path:
    """``git_repo`` whose default provider is the local echo agent, committed."""

    write_providers(git_repo, {"echo": ECHO_AGENT_COMMAND}, default="echo")
    git(git_repo, "add", "-A")
    git(git_repo, "commit", "--quiet", "-m", "providers")
    return git_repo
