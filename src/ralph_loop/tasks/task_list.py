"""Read-only queries over the task-list artifact.

The agent process is the only writer of the artifact, so every query re-reads
the file instead of caching counters between iterations.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ralph_loop.tasks.document import TaskDocument, read_task_document
from ralph_loop.tasks.models import Task, TaskCounts

logger = logging.getLogger(__name__)


class TaskListNotFoundError(FileNotFoundError):
    """Raised when the task-list artifact does not exist."""


class TaskList:
    """Task list backed by one markdown file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> TaskDocument:
        if not self.path.is_file():
            raise TaskListNotFoundError(f"Task list not found: {self.path}")
        document = read_task_document(self.path)
        if document.duplicate_task_ids:
            logger.warning(
                "Ignoring duplicate task sections in %s: %s",
                self.path,
                ", ".join(document.duplicate_task_ids),
            )
        return document

    def tasks(self) -> tuple[Task, ...]:
        return self.read().tasks

    def count_by_state(self) -> TaskCounts:
        """Scan the artifact and count tasks per state."""

        return TaskCounts.from_tasks(self.tasks())

    def next_actionable(self) -> Task | None:
        """First task in file order that is neither complete nor blocked."""

        for task in self.tasks():
            if task.is_blocked or not task.has_pending_work:
                continue
            return task
        return None

    def all_blocked(self) -> bool:
        """True when every incomplete task is blocked (vacuously true if none)."""

        return all(task.is_blocked for task in self.tasks() if task.has_pending_work)

    def is_complete(self) -> bool:
        """True when no task has pending work, blocked or not."""

        return not any(task.has_pending_work for task in self.tasks())

    def working_directory(self) -> str | None:
        return self.read().working_directory
