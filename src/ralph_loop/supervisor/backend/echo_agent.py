"""Local stub agent for CLI backend integration tests and smoke runs.

Each invocation performs one unit of work on the task list named in the
prompt: it ticks the first unchecked criterion of the next actionable task
and prints a completion sentinel once nothing actionable remains.
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

from ralph_loop.supervisor.failure_classifier import ALL_BLOCKED_SENTINEL, COMPLETE_SENTINEL
from ralph_loop.tasks import TaskList, read_task_document, write_task_document

_TASK_LIST_LINE_RE = re.compile(r"^Task list:\s*(?P<path>.+?)\s*$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic unit of work."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=False)
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--block-reason", required=False)
    parser.add_argument("--fail-with", required=False)
    args, _ = parser.parse_known_args(argv)

    if args.fail_with:
        print(args.fail_with)
        return 1

    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text(encoding="utf-8")
    elif args.prompt:
        prompt = args.prompt
    else:
        parser.error("Either --prompt or --prompt-file is required")
    match = _TASK_LIST_LINE_RE.search(prompt)
    if match is None:
        print("No task list path in prompt")
        return 1

    task_list = TaskList(Path(match.group("path")))
    task = task_list.next_actionable()
    if task is not None:
        document = read_task_document(task_list.path)
        if args.block_reason:
            document = document.set_blocked(task.task_id, args.block_reason)
            print(f"Blocked {task.task_id}: {args.block_reason}")
        elif task.criteria:
            index = next(i for i, item in enumerate(task.criteria) if not item.satisfied)
            document = document.set_criterion(task.task_id, index, satisfied=True)
            print(f"Checked {task.task_id}: {task.criteria[index].text}")
        else:
            document = document.set_blocked(task.task_id, "no acceptance criteria to verify")
            print(f"Blocked {task.task_id}: no acceptance criteria")
        write_task_document(task_list.path, document)

    if task_list.is_complete():
        print(COMPLETE_SENTINEL)
    elif task_list.all_blocked():
        print(ALL_BLOCKED_SENTINEL)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
