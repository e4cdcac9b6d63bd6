"""CLI entrypoint for ralph-loop."""

import logging
from pathlib import Path

import rich_click as click

from ralph_loop import __version__
from ralph_loop.supervisor.controllers import LoopRunCommand, SupervisorCliController

click.rich_click.USE_MARKDOWN = True
SUPERVISOR_CONTROLLER = SupervisorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ralph-loop")
def ralph_loop() -> None:
    """Autonomous agent supervisor driven by a markdown task list."""


@ralph_loop.command("run")
@click.argument("max_iterations", type=click.IntRange(min=1), required=False)
@click.argument("sleep_seconds", type=click.FloatRange(min=0), required=False)
@click.option(
    "--profile",
    default=None,
    help="Execution profile: uses `apps/<profile>/PRD.md` on branch `feat/<profile>-work`.",
)
@click.option(
    "--notify/--no-notify",
    default=None,
    help="Send ntfy notifications. Defaults to RALPH_LOOP_NOTIFY.",
)
@click.option("--fast", is_flag=True, help="Use the cheaper model tier (RALPH_LOOP_FAST_MODEL).")
@click.option(
    "--model",
    default=None,
    help="Run every iteration on this model, ignoring RALPH_LOOP_MODEL_ROUTES.",
)
@click.option(
    "--allow-dirty",
    is_flag=True,
    help="Run even when the working tree has uncommitted changes.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts per iteration before giving up. Defaults to RALPH_LOOP_MAX_ATTEMPTS.",
)
@click.option(
    "--retry-delay",
    "retry_delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Fixed delay between attempts in seconds. Defaults to RALPH_LOOP_RETRY_DELAY_SECONDS.",
)
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=Path("."),
    show_default=True,
    help="Project root holding the task list.",
)
@click.option("--verbose", is_flag=True, help="Log diagnostics at INFO level.")
def run(  # noqa: PLR0913
    max_iterations: int | None,
    sleep_seconds: float | None,
    profile: str | None,
    notify: bool | None,
    fast: bool,
    model: str | None,
    allow_dirty: bool,
    max_attempts: int | None,
    retry_delay_seconds: float | None,
    project_dir: Path,
    verbose: bool,
) -> None:
    """Run the agent repeatedly until the task list is complete or blocked.

    Exit codes: `0` complete, `1` iteration budget spent, fatal error,
    interrupt or failed precondition, `2` all remaining tasks blocked.
    """

    _configure_logging(verbose=verbose)
    try:
        result = SUPERVISOR_CONTROLLER.run(
            LoopRunCommand(
                project_dir=project_dir,
                max_iterations=max_iterations,
                sleep_seconds=sleep_seconds,
                profile=profile,
                notify=notify,
                fast=fast,
                model=model,
                allow_dirty=allow_dirty,
                max_attempts=max_attempts,
                retry_delay_seconds=retry_delay_seconds,
                echo=click.echo,
                stream_output=_stream_chunk,
            ),
        )
    except ValueError as error:
        raise click.ClickException(f"Configuration error: {error}") from error
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _stream_chunk(chunk: str) -> None:
    click.echo(chunk, nl=False)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_loop()
