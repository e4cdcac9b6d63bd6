"""Round-trip-safe parser for the markdown task-list artifact.

The artifact is the only durable state shared between the supervisor and the
agent, so the parser never rewrites what it does not understand: the parsed
document keeps every raw line (line endings included) and mutators only touch
the lines they own.

Grammar::

    **Working Directory:** `apps/web`

    ## US-001: Title
    - [ ] unsatisfied criterion
    - [x] satisfied criterion
    **Blocked:** reason

Task headings are level 2 or 3 headings starting with ``<PREFIX>-<NNN>[-<SUFFIX>]``.
Any other heading of level 1-3 closes the current task section. Lines inside
fenced code blocks are never interpreted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.tasks.models import AcceptanceCriterion, Task

TASK_ID_PATTERN = r"[A-Z][A-Z0-9]*-\d{3}(?:-[A-Za-z0-9]+)?"

_HEADING_RE = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<text>.*?)\s*#*\s*$")
_TASK_HEADING_RE = re.compile(
    rf"^(?P<task_id>{TASK_ID_PATTERN})\s*(?:[:\-–—]\s*(?P<title>.*))?$",
)
_CRITERION_RE = re.compile(r"^(?P<lead>\s*[-*+]\s+\[)(?P<mark>[ xX])(?P<tail>\].*)$")
_CRITERION_TEXT_RE = re.compile(r"^\s*[-*+]\s+\[[ xX]\]\s*(?P<text>.*?)\s*$")
_BLOCKED_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:\*\*|__)?blocked(?:\*\*|__)?\s*:\s*(?:\*\*|__)?\s*(?P<reason>.*?)\s*$",
    re.IGNORECASE,
)
_WORKDIR_RE = re.compile(
    r"^\s*(?:\*\*|__)?working[ _-]directory(?:\*\*|__)?\s*:\s*(?:\*\*|__)?\s*"
    r"`?(?P<path>[^`]*?)`?\s*$",
    re.IGNORECASE,
)
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_LINE_ENDING_RE = re.compile(r"(\r\n|\r|\n)$")


class TaskDocumentError(ValueError):
    """Raised when a mutation targets a task or criterion that does not exist."""


@dataclass(slots=True, frozen=True)
class TaskDocument:
    """Parsed task list that renders back to its exact source text."""

    lines: tuple[str, ...]
    tasks: tuple[Task, ...]
    working_directory: str | None = None
    unrecognized_headings: tuple[int, ...] = ()
    duplicate_task_ids: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> TaskDocument:
        return _parse_lines(tuple(text.splitlines(keepends=True)))

    def render(self) -> str:
        return "".join(self.lines)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def set_criterion(self, task_id: str, index: int, *, satisfied: bool) -> TaskDocument:
        """Return a document with one criterion ticked or unticked."""

        task = self._require(task_id)
        if index < 0 or index >= len(task.criteria):
            raise TaskDocumentError(
                f"Task {task_id} has no criterion #{index} ({len(task.criteria)} total).",
            )
        criterion = task.criteria[index]
        position = criterion.line_no - 1
        match = _CRITERION_RE.match(self.lines[position])
        if match is None:  # pragma: no cover - parse guarantees the shape
            raise TaskDocumentError(f"Line {criterion.line_no} is not a criterion line.")
        if criterion.satisfied == satisfied:
            return self
        mark = "x" if satisfied else " "
        updated = f"{match.group('lead')}{mark}{match.group('tail')}"
        return self._with_lines(_replace_line(self.lines, position, updated))

    def set_blocked(self, task_id: str, reason: str | None) -> TaskDocument:
        """Return a document with the blocked marker of a task set or removed."""

        task = self._require(task_id)
        if reason is None:
            if task.blocked_line_no is None:
                return self
            lines = list(self.lines)
            del lines[task.blocked_line_no - 1]
            return self._with_lines(tuple(lines))

        marker = f"**Blocked:** {reason.strip()}"
        if task.blocked_line_no is not None:
            return self._with_lines(
                _replace_line(self.lines, task.blocked_line_no - 1, marker),
            )

        anchor = task.criteria[-1].line_no if task.criteria else task.line_no
        anchor_line = self.lines[anchor - 1]
        ending = _line_ending(anchor_line) or _dominant_line_ending(self.lines)
        lines = list(self.lines)
        if not _line_ending(anchor_line):
            lines[anchor - 1] = anchor_line + ending
        lines.insert(anchor, marker + ending)
        return self._with_lines(tuple(lines))

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskDocumentError(f"Unknown task id: {task_id}")
        return task

    def _with_lines(self, lines: tuple[str, ...]) -> TaskDocument:
        return _parse_lines(lines)


def read_task_document(path: Path) -> TaskDocument:
    """Read and parse the task list, keeping original line endings."""

    with path.open("r", encoding="utf-8", newline="") as handle:
        return TaskDocument.parse(handle.read())


def write_task_document(path: Path, document: TaskDocument) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(document.render())


@dataclass(slots=True)
class _SectionBuilder:
    task_id: str
    title: str
    line_no: int
    criteria: list[AcceptanceCriterion]
    blocked_reason: str | None = None
    blocked_line_no: int | None = None

    def build(self) -> Task:
        return Task(
            task_id=self.task_id,
            title=self.title,
            line_no=self.line_no,
            criteria=tuple(self.criteria),
            blocked_reason=self.blocked_reason,
            blocked_line_no=self.blocked_line_no,
        )


def _parse_lines(lines: tuple[str, ...]) -> TaskDocument:  # noqa: C901
    tasks: list[Task] = []
    seen_ids: set[str] = set()
    duplicates: list[str] = []
    unrecognized: list[int] = []
    working_directory: str | None = None
    current: _SectionBuilder | None = None
    in_fence = False

    def _close() -> None:
        nonlocal current
        if current is None:
            return
        if current.task_id in seen_ids:
            duplicates.append(current.task_id)
        else:
            seen_ids.add(current.task_id)
            tasks.append(current.build())
        current = None

    for line_no, raw in enumerate(lines, start=1):
        line = _strip_line_ending(raw)
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        heading = _HEADING_RE.match(line)
        if heading is not None:
            level = len(heading.group("hashes"))
            if level > 3:
                continue
            _close()
            task_heading = _TASK_HEADING_RE.match(heading.group("text"))
            if level >= 2 and task_heading is not None:
                current = _SectionBuilder(
                    task_id=task_heading.group("task_id"),
                    title=(task_heading.group("title") or "").strip(),
                    line_no=line_no,
                    criteria=[],
                )
            elif level >= 2:
                unrecognized.append(line_no)
            continue

        if current is None:
            if working_directory is None and not tasks:
                workdir = _WORKDIR_RE.match(line)
                if workdir is not None and workdir.group("path").strip():
                    working_directory = workdir.group("path").strip()
            continue

        criterion = _CRITERION_RE.match(line)
        if criterion is not None:
            text_match = _CRITERION_TEXT_RE.match(line)
            current.criteria.append(
                AcceptanceCriterion(
                    text=text_match.group("text") if text_match else "",
                    satisfied=criterion.group("mark") in {"x", "X"},
                    line_no=line_no,
                ),
            )
            continue

        blocked = _BLOCKED_RE.match(line)
        if blocked is not None and current.blocked_line_no is None:
            current.blocked_reason = blocked.group("reason")
            current.blocked_line_no = line_no

    _close()
    return TaskDocument(
        lines=lines,
        tasks=tuple(tasks),
        working_directory=working_directory,
        unrecognized_headings=tuple(unrecognized),
        duplicate_task_ids=tuple(duplicates),
    )


def _replace_line(lines: tuple[str, ...], position: int, content: str) -> tuple[str, ...]:
    updated = list(lines)
    updated[position] = content + _line_ending(lines[position])
    return tuple(updated)


def _strip_line_ending(line: str) -> str:
    return _LINE_ENDING_RE.sub("", line)


def _line_ending(line: str) -> str:
    match = _LINE_ENDING_RE.search(line)
    return match.group(1) if match else ""


def _dominant_line_ending(lines: tuple[str, ...]) -> str:
    for line in lines:
        ending = _line_ending(line)
        if ending:
            return ending
    return "\n"
