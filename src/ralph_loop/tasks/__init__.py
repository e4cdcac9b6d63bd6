"""Task-list artifact: typed document, parser, and read-only queries."""

from ralph_loop.tasks.document import (
    TaskDocument,
    TaskDocumentError,
    read_task_document,
    write_task_document,
)
from ralph_loop.tasks.models import AcceptanceCriterion, Task, TaskCounts, TaskState
from ralph_loop.tasks.task_list import TaskList, TaskListNotFoundError

__all__ = [
    "AcceptanceCriterion",
    "Task",
    "TaskCounts",
    "TaskDocument",
    "TaskDocumentError",
    "TaskList",
    "TaskListNotFoundError",
    "TaskState",
    "read_task_document",
    "write_task_document",
]
