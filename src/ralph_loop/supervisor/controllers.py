"""Controller for the supervisor CLI command."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ralph_loop.config import Settings
from ralph_loop.supervisor.backend import AgentRunner, CliAgentBackend
from ralph_loop.supervisor.loop import Supervisor, render_summary_lines
from ralph_loop.supervisor.models import ExecutionContext, PreconditionError
from ralph_loop.supervisor.notifications import build_notification_sink
from ralph_loop.supervisor.retry import RetryPolicy
from ralph_loop.supervisor.workspace import WorkspaceGuard, discover_git
from ralph_loop.tasks import TaskList

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for one supervisor run; ``None`` keeps the environment value."""

    project_dir: Path
    max_iterations: int | None = None
    sleep_seconds: float | None = None
    profile: str | None = None
    notify: bool | None = None
    fast: bool = False
    model: str | None = None
    allow_dirty: bool = False
    max_attempts: int | None = None
    retry_delay_seconds: float | None = None
    echo: Callable[[str], None] | None = None
    stream_output: Callable[[str], None] | None = None
    confirm_dirty: Callable[[tuple[str, ...]], bool] | None = None


@dataclass(slots=True)
class LoopRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    exit_code: int


class SupervisorCliController:
    """Wire settings, workspace guard and supervisor for the ``run`` command."""

    def __init__(
        self,
        *,
        runner: AgentRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner or CliAgentBackend()
        self.sleep = sleep

    def run(self, command: LoopRunCommand) -> LoopRunResult:
        settings = _apply_overrides(Settings.from_env(), command)
        settings.validate()

        project_dir = command.project_dir.resolve()
        guard = WorkspaceGuard(
            settings=settings.workspace,
            root=project_dir,
            git=discover_git(project_dir),
            confirm_dirty=command.confirm_dirty,
        )
        try:
            context = guard.ensure(profile=command.profile, allow_dirty=command.allow_dirty)
        except PreconditionError as error:
            return LoopRunResult(lines=[f"Precondition failed: {error}"], exit_code=1)

        model, model_routes = _select_model(settings, command)
        sink = build_notification_sink(
            settings.notify,
            enabled=settings.notify.enabled,
            project_dir=project_dir,
        )
        try:
            supervisor = Supervisor(
                task_list=TaskList(context.task_list_path),
                runner=self.runner,
                retry_policy=RetryPolicy(
                    max_attempts=settings.retry.max_attempts,
                    delay_seconds=settings.retry.delay_seconds,
                    sleep=self.sleep,
                ),
                sink=sink,
                working_dir=context.working_dir,
                model=model,
                command_template=settings.agent.command_template,
                model_routes=model_routes,
                max_iterations=settings.loop.max_iterations,
                sleep_seconds=settings.loop.sleep_seconds,
                transient_markers=settings.retry.transient_markers,
                agent_timeout_seconds=settings.agent.timeout_seconds,
                graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
                echo=command.echo,
                stream_output=command.stream_output,
                sleep=self.sleep,
            )
            if command.echo is not None:
                for line in _context_lines(context, model=model, model_routes=model_routes):
                    command.echo(line)
            summary = supervisor.run()
        finally:
            guard.restore(context)
            sink.close()

        lines = render_summary_lines(summary)
        if context.branch_switched:
            lines.append(f"Warning: could not restore branch {context.original_branch}")
        elif context.profile_branch and context.original_branch not in {
            None,
            context.profile_branch,
        }:
            lines.append(f"Restored branch {context.original_branch}")
        return LoopRunResult(lines=lines, exit_code=summary.exit_code)


def _apply_overrides(settings: Settings, command: LoopRunCommand) -> Settings:
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.sleep_seconds is not None:
        settings.loop.sleep_seconds = command.sleep_seconds
    if command.max_attempts is not None:
        settings.retry.max_attempts = command.max_attempts
    if command.retry_delay_seconds is not None:
        settings.retry.delay_seconds = command.retry_delay_seconds
    if command.notify is not None:
        settings.notify.enabled = command.notify
    return settings


def _select_model(settings: Settings, command: LoopRunCommand) -> tuple[str, dict[str, str]]:
    """Explicit model or `--fast` pins one model; otherwise task prefixes may route."""

    if command.model:
        return command.model, {}
    if command.fast:
        return settings.agent.fast_model, {}
    return settings.agent.model, settings.agent.model_routes


def _context_lines(
    context: ExecutionContext,
    *,
    model: str,
    model_routes: dict[str, str],
) -> list[str]:
    lines = [
        f"Task list: {context.task_list_path}",
        f"Working directory: {context.working_dir}",
        f"Model: {model}",
    ]
    if model_routes:
        routes = ", ".join(f"{prefix}={name}" for prefix, name in sorted(model_routes.items()))
        lines.append(f"Model routes: {routes}")
    if context.profile:
        lines.append(f"Profile: {context.profile} (branch {context.profile_branch})")
    if not context.git_enabled:
        lines.append("Git: not a repository, branch checks skipped")
    elif not context.clean_tree:
        lines.append("Git: working tree has uncommitted changes (override)")
    return lines
