"""Domain models for supervisor state, attempts and execution context."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from ralph_loop.tasks import TaskCounts


class SupervisorState(str, Enum):
    """Supervisor lifecycle states; everything past ITERATING is terminal."""

    INIT = "init"
    ITERATING = "iterating"
    COMPLETE = "complete"
    ALL_BLOCKED = "all_blocked"
    MAX_ITERATIONS = "max_iterations"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES.get(self, 1)


_EXIT_CODES = {
    SupervisorState.COMPLETE: 0,
    SupervisorState.ALL_BLOCKED: 2,
}


class AttemptClassification(str, Enum):
    """Classification of one agent invocation."""

    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


class LoopSignal(str, Enum):
    """What a successful attempt asks the loop to do next."""

    CONTINUE = "continue"
    COMPLETE = "complete"
    ALL_BLOCKED = "all_blocked"


class SupervisorError(RuntimeError):
    """Base error for supervisor failures that end the run."""


class PreconditionError(SupervisorError):
    """Startup condition not met; reported before any agent invocation."""


class TaskListMissingError(PreconditionError):
    """Task-list artifact is absent for the selected profile."""


class WorkingDirectoryNotFoundError(PreconditionError):
    """Working-directory override points to a missing directory."""


class DirtyWorkingTreeError(PreconditionError):
    """Uncommitted changes present and no operator override given."""

    def __init__(self, message: str, *, paths: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.paths = paths


@dataclass(slots=True)
class AttemptOutcome:
    """One classified agent attempt."""

    attempt_no: int
    classification: AttemptClassification
    signal: LoopSignal
    exit_code: int | None
    output: str
    reason_code: str
    matched_pattern: str | None = None
    duration_seconds: float = 0.0

    @property
    def is_transient(self) -> bool:
        return self.classification == AttemptClassification.TRANSIENT_ERROR

    @property
    def is_fatal(self) -> bool:
        return self.classification == AttemptClassification.FATAL_ERROR


@dataclass(slots=True)
class IterationRecord:
    """Transient summary of one loop iteration, discarded after reporting."""

    iteration: int
    started_at: datetime
    output: str
    exit_code: int | None
    classification: AttemptClassification
    signal: LoopSignal
    attempts: int
    gave_up: bool
    reason_code: str
    counts: TaskCounts | None = None

    @property
    def failed(self) -> bool:
        return self.classification != AttemptClassification.SUCCESS


@dataclass(slots=True)
class ExecutionContext:
    """Where and on which branch one supervisor run operates."""

    root: Path
    working_dir: Path
    task_list_path: Path
    profile: str | None = None
    profile_branch: str | None = None
    original_branch: str | None = None
    branch_switched: bool = False
    clean_tree: bool = True
    git_enabled: bool = True


@dataclass(slots=True)
class SupervisorRunSummary:
    """Aggregate counters and final state of one supervisor run."""

    state: SupervisorState = SupervisorState.INIT
    iterations: int = 0
    failed_iterations: int = 0
    attempts: int = 0
    counts: TaskCounts | None = None
    elapsed_seconds: float = 0.0
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return self.state.exit_code
