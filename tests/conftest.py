"""Shared test fixtures."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m ralph_loop.supervisor.backend.echo_agent --prompt-file {{prompt_file}}"
)

SAMPLE_TASK_LIST = """\
# Project Tasks

**Working Directory:** `.`

## US-001: Add login form
- [x] Form renders
- [ ] Validation errors shown

## US-002: Session storage
- [ ] Sessions persist across restarts
**Blocked:** waiting for Redis credentials

## US-003: Logout
- [ ] Logout button clears session
- [ ] Redirects to home
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop RALPH_LOOP_* variables from the developer environment."""

    for name in list(os.environ):
        if name.startswith("RALPH_LOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def write_task_list():
    def _write(path: Path, text: str = SAMPLE_TASK_LIST) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(text.encode("utf-8"))
        return path

    return _write


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the agent command at the local stub agent."""

    monkeypatch.setenv("RALPH_LOOP_AGENT_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE


def _git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        capture_output=True,
        text=True,
        check=True,
    )
    return completed.stdout.strip()


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """Initialised repository on branch ``main`` with one commit."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    root = tmp_path / "repo"
    root.mkdir()
    _git(root, "init", "-q")
    _git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(root, "config", "user.email", "tests@example.com")
    _git(root, "config", "user.name", "Tests")
    _git(root, "config", "commit.gpgsign", "false")
    (root / "README.md").write_text("demo\n", encoding="utf-8")
    _git(root, "add", "README.md")
    _git(root, "commit", "-q", "-m", "init")
    return root


@pytest.fixture()
def git():
    return _git
