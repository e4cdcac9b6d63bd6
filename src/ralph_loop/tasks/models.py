"""Domain models for the task-list artifact."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TaskState(str, Enum):
    """Derived lifecycle state of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


@dataclass(slots=True, frozen=True)
class AcceptanceCriterion:
    """One checkbox line of a task section."""

    text: str
    satisfied: bool
    line_no: int


@dataclass(slots=True, frozen=True)
class Task:
    """Task section parsed from the task list."""

    task_id: str
    title: str
    line_no: int
    criteria: tuple[AcceptanceCriterion, ...] = ()
    blocked_reason: str | None = None
    blocked_line_no: int | None = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None

    @property
    def satisfied_count(self) -> int:
        return sum(1 for criterion in self.criteria if criterion.satisfied)

    @property
    def has_pending_work(self) -> bool:
        """True when any criterion is unsatisfied or the task has none to verify."""

        return not self.criteria or self.satisfied_count < len(self.criteria)

    @property
    def state(self) -> TaskState:
        if self.is_blocked:
            return TaskState.BLOCKED
        if not self.has_pending_work:
            return TaskState.COMPLETED
        if self.satisfied_count > 0:
            return TaskState.IN_PROGRESS
        return TaskState.PENDING


@dataclass(slots=True)
class TaskCounts:
    """Per-state task counters derived from one scan of the artifact."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0
    criteria_total: int = 0
    criteria_satisfied: int = 0
    by_state: dict[TaskState, list[str]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.completed + self.blocked

    @property
    def remaining(self) -> int:
        """Unblocked tasks that still have work."""

        return self.pending + self.in_progress

    @classmethod
    def from_tasks(cls, tasks: tuple[Task, ...] | list[Task]) -> TaskCounts:
        counts = cls()
        for task in tasks:
            state = task.state
            if state == TaskState.PENDING:
                counts.pending += 1
            elif state == TaskState.IN_PROGRESS:
                counts.in_progress += 1
            elif state == TaskState.COMPLETED:
                counts.completed += 1
            else:
                counts.blocked += 1
            counts.by_state.setdefault(state, []).append(task.task_id)
            counts.criteria_total += len(task.criteria)
            counts.criteria_satisfied += task.satisfied_count
        return counts
