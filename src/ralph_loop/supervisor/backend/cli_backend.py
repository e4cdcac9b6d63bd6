"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from ralph_loop.supervisor.backend.base import AgentRunRequest, AgentRunResult

TIMEOUT_EXIT_CODE = 124
_READER_JOIN_SECONDS = 5.0


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Run the agent command template once and tee its output."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        prompt_file = _write_prompt_file(request.prompt)
        try:
            run_args, command_head = _build_run_args(
                command_template=request.command_template,
                model=request.model,
                prompt=request.prompt,
                prompt_file=prompt_file,
            )

            env = os.environ.copy()
            env["RALPH_LOOP_MODEL"] = request.model
            env["RALPH_LOOP_WORKING_DIR"] = str(request.working_dir)

            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.working_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"Agent command not found: {command_head}",
                    transient=False,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"Agent command failed to start: {error}",
                    transient=True,
                ) from error

            return _wait_with_tee(
                process=process,
                echo=request.echo,
                timeout_seconds=request.timeout_seconds,
                shutdown_requested=request.shutdown_requested,
                graceful_shutdown_seconds=request.graceful_shutdown_seconds,
            )
        finally:
            prompt_file.unlink(missing_ok=True)


def _write_prompt_file(prompt: str) -> Path:
    handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
        mode="w",
        encoding="utf-8",
        prefix="ralph-loop-prompt-",
        suffix=".md",
        delete=False,
    )
    with handle:
        handle.write(prompt)
    return Path(handle.name)


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


def _drain_output(
    stream: IO[str],
    chunks: list[str],
    echo: Callable[[str], None] | None,
) -> None:
    for line in iter(stream.readline, ""):
        chunks.append(line)
        if echo is not None:
            echo(line)
    stream.close()


def _wait_with_tee(
    *,
    process: subprocess.Popen[str],
    echo: Callable[[str], None] | None,
    timeout_seconds: int | None,
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int | None,
) -> AgentRunResult:
    chunks: list[str] = []
    reader = threading.Thread(
        target=_drain_output,
        args=(process.stdout, chunks, echo),
        name="ralph-loop-agent-output",
        daemon=True,
    )
    reader.start()

    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)
    timed_out = False
    interrupted = False

    while True:
        returncode = process.poll()
        if returncode is not None:
            break

        now = time.monotonic()
        if timeout_seconds and now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            timed_out = True
            break

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                interrupted = True
                break

        time.sleep(0.1)

    reader.join(timeout=_READER_JOIN_SECONDS)
    exit_code = TIMEOUT_EXIT_CODE if timed_out else process.wait()
    return AgentRunResult(
        exit_code=exit_code,
        output="".join(chunks),
        timed_out=timed_out,
        interrupted=interrupted,
        duration_seconds=time.monotonic() - start_monotonic,
    )


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
