"""Branch and working-directory lifecycle around one supervisor run."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from ralph_loop.config import WorkspaceSettings
from ralph_loop.supervisor.models import (
    DirtyWorkingTreeError,
    ExecutionContext,
    PreconditionError,
    TaskListMissingError,
    WorkingDirectoryNotFoundError,
)
from ralph_loop.tasks import TaskList

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_PROFILE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around the ``git`` commands the guard needs."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> GitRepository:
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate)
        raise GitError(f"Unable to locate a git repository from {path}")

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.root,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError as error:
            raise GitError("git executable not found on PATH") from error
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def current_branch(self) -> str:
        """Branch name, or the commit sha when HEAD is detached."""

        symbolic = self._run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if symbolic.returncode == 0 and symbolic.stdout.strip():
            return symbolic.stdout.strip()
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def branch_exists(self, name: str) -> bool:
        probe = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return probe.returncode == 0

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", name])

    def create_branch(self, name: str) -> None:
        """Create ``name`` from the current HEAD and switch to it."""

        self._run_git(["checkout", "-b", name])

    def dirty_paths(self) -> tuple[str, ...]:
        """Paths with uncommitted changes, untracked files included."""

        status = self._run_git(["status", "--porcelain", "--untracked-files=all"])
        paths: list[str] = []
        for line in status.stdout.splitlines():
            if len(line) > 3:
                paths.append(line[3:])
        return tuple(paths)


class WorkspaceGuard:
    """Enforce a clean tree and the profile branch; restore the original branch on exit."""

    def __init__(
        self,
        *,
        settings: WorkspaceSettings,
        root: Path,
        git: GitRepository | None = None,
        confirm_dirty: Callable[[tuple[str, ...]], bool] | None = None,
    ) -> None:
        self.settings = settings
        self.root = Path(root).resolve()
        self.git = git
        self.confirm_dirty = confirm_dirty

    def resolve_profile(self, profile: str | None) -> tuple[Path, str | None]:
        """Map a profile name to its task-list path and dedicated branch."""

        if profile is None:
            return self.root / self.settings.task_file_name, None
        if not _PROFILE_RE.match(profile):
            raise PreconditionError(f"Invalid profile name: {profile!r}")
        task_list_path = (
            self.root / self.settings.profiles_dir / profile / self.settings.task_file_name
        )
        return task_list_path, self.settings.branch_template.format(profile=profile)

    def ensure(self, *, profile: str | None = None, allow_dirty: bool = False) -> ExecutionContext:
        """Check preconditions and switch to the profile branch.

        Raises ``PreconditionError`` subclasses before any agent runs. If a
        later check fails after the branch switch, the switch is undone first.
        """

        task_list_path, profile_branch = self.resolve_profile(profile)
        context = ExecutionContext(
            root=self.root,
            working_dir=self.root,
            task_list_path=task_list_path,
            profile=profile,
            profile_branch=profile_branch,
            git_enabled=self.git is not None,
        )

        if self.git is None:
            if profile_branch is not None:
                raise PreconditionError(
                    f"Profile {profile!r} needs a git repository at {self.root}.",
                )
            logger.warning("No git repository at %s; branch and clean-tree checks skipped", self.root)
        else:
            self._check_clean_tree(context, allow_dirty=allow_dirty)
            context.original_branch = self._git_call(self.git.current_branch)
            if profile_branch is not None:
                self._switch_to(profile_branch, context)

        try:
            self._resolve_task_list(context)
        except BaseException:
            self.restore(context)
            raise
        return context

    def restore(self, context: ExecutionContext) -> None:
        """Switch back to the branch that was active before ``ensure``."""

        if not context.branch_switched or self.git is None or context.original_branch is None:
            return
        try:
            self.git.checkout(context.original_branch)
        except GitError:
            logger.exception("Failed to restore branch %s", context.original_branch)
            return
        context.branch_switched = False
        logger.info("Restored branch %s", context.original_branch)

    @contextmanager
    def guard(
        self,
        *,
        profile: str | None = None,
        allow_dirty: bool = False,
    ) -> Iterator[ExecutionContext]:
        context = self.ensure(profile=profile, allow_dirty=allow_dirty)
        try:
            yield context
        finally:
            self.restore(context)

    def _check_clean_tree(self, context: ExecutionContext, *, allow_dirty: bool) -> None:
        if self.git is None:
            return
        paths = self._git_call(self.git.dirty_paths)
        context.clean_tree = not paths
        if not paths:
            return
        if allow_dirty:
            logger.warning("Proceeding with %d uncommitted change(s) by override", len(paths))
            return
        if self.confirm_dirty is not None and self.confirm_dirty(paths):
            logger.warning("Operator accepted %d uncommitted change(s)", len(paths))
            return
        preview = ", ".join(paths[:5]) + (" ..." if len(paths) > 5 else "")
        raise DirtyWorkingTreeError(
            f"Working tree has uncommitted changes: {preview}. "
            "Commit or stash them, or pass --allow-dirty.",
            paths=paths,
        )

    def _switch_to(self, branch: str, context: ExecutionContext) -> None:
        git = self.git
        if git is None or context.original_branch == branch:
            return
        if self._git_call(lambda: git.branch_exists(branch)):
            self._git_call(lambda: git.checkout(branch))
            logger.info("Switched to existing branch %s", branch)
        else:
            self._git_call(lambda: git.create_branch(branch))
            logger.info("Created branch %s from %s", branch, context.original_branch)
        context.branch_switched = True

    def _resolve_task_list(self, context: ExecutionContext) -> None:
        task_list = TaskList(context.task_list_path)
        if not task_list.exists():
            raise TaskListMissingError(f"Task list not found: {context.task_list_path}")

        try:
            override = task_list.working_directory()
        except (OSError, UnicodeDecodeError) as error:
            raise PreconditionError(
                f"Task list {context.task_list_path} is unreadable: {error}",
            ) from error
        if override is None:
            return
        candidate = Path(override).expanduser()
        working_dir = candidate if candidate.is_absolute() else self.root / candidate
        if not working_dir.is_dir():
            raise WorkingDirectoryNotFoundError(
                f"Working directory declared in {context.task_list_path.name} "
                f"does not exist: {working_dir}",
            )
        context.working_dir = working_dir.resolve()

    @staticmethod
    def _git_call(call: Callable[[], _T]) -> _T:
        try:
            return call()
        except GitError as error:
            raise PreconditionError(str(error)) from error


def discover_git(root: Path) -> GitRepository | None:
    try:
        return GitRepository.discover(root)
    except GitError:
        return None
