"""Backend interface for agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    prompt: str
    working_dir: Path
    model: str
    command_template: str
    timeout_seconds: int | None = None
    echo: Callable[[str], None] | None = None
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the backend runner."""

    exit_code: int
    output: str
    timed_out: bool = False
    interrupted: bool = False
    duration_seconds: float = 0.0


class AgentRunner(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one agent attempt and return its exit code and captured output."""
