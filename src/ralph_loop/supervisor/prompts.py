"""Fixed prompt template handed to the agent on every iteration."""

from __future__ import annotations

from pathlib import Path

from ralph_loop.supervisor.failure_classifier import ALL_BLOCKED_SENTINEL, COMPLETE_SENTINEL

ITERATION_PROMPT = """\
You are an autonomous coding agent working through a task list one unit of work at a time.

Task list: {task_list_path}
Working directory: {working_dir}

The task list is the only memory shared between iterations. Re-read it now.

## Your Task

1. Read the task list and pick the first task, in file order, that still has
   unchecked acceptance criteria and is not marked **Blocked:**.
2. Do ONE unit of work on that task inside the working directory.
3. Verify the work (run the relevant tests or type checks if the criteria require it).
4. Tick every criterion you satisfied, in place: change `- [ ]` to `- [x]`.
   Do not reword, reorder or delete anything else in the file.
5. If you cannot make progress on the task, add a line `**Blocked:** <reason>`
   below its criteria and move on.
6. Commit your changes with a descriptive message.

## Completion Signals

Print one of these on a line by itself, and only when it is true for the whole list:
- {complete_sentinel} when every task has all criteria checked
- {all_blocked_sentinel} when every unfinished task is blocked

Print neither when work remains; the next iteration will continue.

## Important

- Do NOT work on more than one task.
- Do NOT keep retrying blocked tasks.
- Do NOT skip committing.
"""


def build_iteration_prompt(*, task_list_path: Path, working_dir: Path) -> str:
    """Render the prompt; nothing else from the supervisor is injected."""

    return ITERATION_PROMPT.format(
        task_list_path=task_list_path,
        working_dir=working_dir,
        complete_sentinel=COMPLETE_SENTINEL,
        all_blocked_sentinel=ALL_BLOCKED_SENTINEL,
    )
