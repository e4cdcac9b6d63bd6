"""Supervisor loop: run the agent until the task list says it is done."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from ralph_loop.config import DEFAULT_TRANSIENT_MARKERS
from ralph_loop.supervisor.backend import (
    AgentRunner,
    AgentRunRequest,
    BackendRunError,
)
from ralph_loop.supervisor.failure_classifier import (
    classify_agent_output,
    classify_backend_error,
)
from ralph_loop.supervisor.models import (
    AttemptClassification,
    AttemptOutcome,
    IterationRecord,
    LoopSignal,
    SupervisorRunSummary,
    SupervisorState,
)
from ralph_loop.supervisor.notifications import NotificationEvent, NotificationSink
from ralph_loop.supervisor.prompts import build_iteration_prompt
from ralph_loop.supervisor.retry import RetryPolicy, sleep_until_stopped
from ralph_loop.tasks import TaskCounts, TaskList, TaskState

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = {
    SupervisorState.COMPLETE: NotificationEvent.COMPLETE,
    SupervisorState.ALL_BLOCKED: NotificationEvent.ALL_BLOCKED,
    SupervisorState.MAX_ITERATIONS: NotificationEvent.MAX_ITERATIONS,
    SupervisorState.FATAL: NotificationEvent.FATAL,
}


class Supervisor:
    """Drive one agent process per iteration against a task list."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_list: TaskList,
        runner: AgentRunner,
        retry_policy: RetryPolicy,
        sink: NotificationSink,
        working_dir: Path,
        model: str,
        command_template: str,
        model_routes: Mapping[str, str] | None = None,
        max_iterations: int = 100,
        sleep_seconds: float = 5.0,
        transient_markers: tuple[str, ...] = DEFAULT_TRANSIENT_MARKERS,
        agent_timeout_seconds: int = 0,
        graceful_shutdown_seconds: int = 10,
        echo: Callable[[str], None] | None = None,
        stream_output: Callable[[str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_iterations <= 0:
            raise ValueError("max_iterations must be > 0.")
        if sleep_seconds < 0:
            raise ValueError("sleep_seconds must be >= 0.")
        self.task_list = task_list
        self.runner = runner
        self.retry_policy = retry_policy
        self.sink = sink
        self.working_dir = working_dir
        self.model = model
        self.model_routes = dict(model_routes or {})
        self.command_template = command_template
        self.max_iterations = max_iterations
        self.sleep_seconds = sleep_seconds
        self.transient_markers = transient_markers
        self.agent_timeout_seconds = agent_timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._echo = echo
        self._stream_output = stream_output
        self._sleep = sleep
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self.state = SupervisorState.INIT

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Ask the loop to stop; the running agent gets the graceful window."""

        if not self._stop_requested:
            logger.warning("Stop requested (%s); finishing current attempt", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self) -> SupervisorRunSummary:
        """Iterate until a terminal state is reached and return the run summary."""

        summary = SupervisorRunSummary()
        started = time.monotonic()
        prompt = build_iteration_prompt(
            task_list_path=self.task_list.path,
            working_dir=self.working_dir,
        )
        self.state = SupervisorState.ITERATING
        with self._signal_handlers():
            try:
                self._iterate(prompt=prompt, summary=summary)
            finally:
                summary.state = self.state
                summary.elapsed_seconds = time.monotonic() - started
        self._notify_terminal(summary)
        return summary

    def _iterate(self, *, prompt: str, summary: SupervisorRunSummary) -> None:  # noqa: C901
        for iteration in range(1, self.max_iterations + 1):
            if self._stop_requested:
                self.state = SupervisorState.INTERRUPTED
                return

            self._emit_banner(iteration)
            record = self._run_iteration(iteration=iteration, prompt=prompt)
            summary.iterations += 1
            summary.attempts += record.attempts
            if record.failed:
                summary.failed_iterations += 1

            try:
                record.counts = self.task_list.count_by_state()
            except (OSError, UnicodeDecodeError) as error:
                logger.error("Task list unreadable after iteration %d: %s", iteration, error)
                summary.error = str(error)
                self.state = SupervisorState.FATAL
                return
            summary.counts = record.counts

            if record.signal == LoopSignal.COMPLETE:
                self.state = SupervisorState.COMPLETE
                return
            if record.signal == LoopSignal.ALL_BLOCKED:
                self.state = SupervisorState.ALL_BLOCKED
                return
            if record.classification == AttemptClassification.FATAL_ERROR:
                summary.error = record.output.strip() or record.reason_code
                self.state = SupervisorState.FATAL
                return
            if self._stop_requested:
                self.state = SupervisorState.INTERRUPTED
                return

            if record.gave_up:
                self.sink.emit(
                    NotificationEvent.ERROR,
                    f"Iteration {iteration} gave up after {record.attempts} attempt(s): "
                    f"{record.reason_code}",
                )
            else:
                self.sink.emit(
                    NotificationEvent.ITERATION,
                    f"Iteration {iteration}/{self.max_iterations} done. "
                    f"{_counts_line(record.counts)}",
                )

            if iteration < self.max_iterations:
                self._sleep_with_stop(self.sleep_seconds)

        self.state = SupervisorState.MAX_ITERATIONS

    def _run_iteration(self, *, iteration: int, prompt: str) -> IterationRecord:
        started_at = datetime.now(tz=UTC)

        def _on_retry(outcome: AttemptOutcome, delay: float) -> None:
            self._emit(
                f"Attempt {outcome.attempt_no} failed ({outcome.reason_code}); "
                f"retrying in {delay:.0f}s",
            )
            self.sink.emit(
                NotificationEvent.RETRY,
                f"Iteration {iteration} attempt {outcome.attempt_no} failed: {outcome.reason_code}",
            )

        retried = self.retry_policy.execute(
            lambda attempt_no: self._attempt(attempt_no=attempt_no, prompt=prompt),
            on_retry=_on_retry,
            should_stop=lambda: self._stop_requested,
        )
        outcome = retried.outcome
        logger.info(
            "Iteration %d finished: classification=%s signal=%s attempts=%d",
            iteration,
            outcome.classification.value,
            outcome.signal.value,
            retried.attempts,
        )
        return IterationRecord(
            iteration=iteration,
            started_at=started_at,
            output=outcome.output,
            exit_code=outcome.exit_code,
            classification=outcome.classification,
            signal=outcome.signal,
            attempts=retried.attempts,
            gave_up=retried.gave_up,
            reason_code=outcome.reason_code,
        )

    def _attempt(self, *, attempt_no: int, prompt: str) -> AttemptOutcome:
        request = AgentRunRequest(
            prompt=prompt,
            working_dir=self.working_dir,
            model=self._resolve_model(),
            command_template=self.command_template,
            timeout_seconds=self.agent_timeout_seconds or None,
            echo=self._stream_output,
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        try:
            result = self.runner.run(request)
        except BackendRunError as error:
            logger.error("Agent failed to start: %s", error)
            classified = classify_backend_error(transient=error.transient)
            return AttemptOutcome(
                attempt_no=attempt_no,
                classification=classified.classification,
                signal=classified.signal,
                exit_code=None,
                output=str(error),
                reason_code=classified.reason_code,
            )

        if result.timed_out:
            logger.warning("Agent attempt %d timed out", attempt_no)
        classified = classify_agent_output(
            exit_code=result.exit_code,
            output=result.output,
            transient_markers=self.transient_markers,
        )
        return AttemptOutcome(
            attempt_no=attempt_no,
            classification=classified.classification,
            signal=classified.signal,
            exit_code=result.exit_code,
            output=result.output,
            reason_code=classified.reason_code,
            matched_pattern=classified.matched_pattern,
            duration_seconds=result.duration_seconds,
        )

    def _resolve_model(self) -> str:
        """Model routed by the id prefix of the next actionable task, else the default."""

        if not self.model_routes:
            return self.model
        try:
            next_task = self.task_list.next_actionable()
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Could not read task list for model routing: %s", error)
            return self.model
        if next_task is None:
            return self.model
        prefix = next_task.task_id.split("-", 1)[0]
        model = self.model_routes.get(prefix, self.model)
        logger.info("Routing %s to model %s", next_task.task_id, model)
        return model

    def _emit_banner(self, iteration: int) -> None:
        try:
            counts = self.task_list.count_by_state()
            next_task = self.task_list.next_actionable()
        except (OSError, UnicodeDecodeError) as error:
            logger.warning("Could not read task list for banner: %s", error)
            self._emit(f"=== Iteration {iteration}/{self.max_iterations} ===")
            return
        target = f"{next_task.task_id}: {next_task.title}" if next_task else "-"
        self._emit(f"=== Iteration {iteration}/{self.max_iterations} === next={target}")
        self._emit(_counts_line(counts))

    def _notify_terminal(self, summary: SupervisorRunSummary) -> None:
        event = _TERMINAL_EVENTS.get(summary.state)
        if event is None:
            return
        parts = [f"{summary.state.value} after {summary.iterations} iteration(s)."]
        if summary.counts is not None:
            parts.append(_counts_line(summary.counts))
        if summary.error:
            parts.append(summary.error)
        self.sink.emit(event, " ".join(parts))

    def _emit(self, line: str) -> None:
        if self._echo is not None:
            self._echo(line)

    def _sleep_with_stop(self, seconds: float) -> None:
        sleep_until_stopped(seconds, sleep=self._sleep, should_stop=lambda: self._stop_requested)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def render_summary_lines(summary: SupervisorRunSummary) -> list[str]:
    """Structured terminal summary for one run."""

    lines = [
        "Supervisor summary: "
        f"state={summary.state.value} exit_code={summary.exit_code} "
        f"iterations={summary.iterations} failed_iterations={summary.failed_iterations} "
        f"attempts={summary.attempts} elapsed={summary.elapsed_seconds:.1f}s",
    ]
    if summary.counts is not None:
        lines.append(_counts_line(summary.counts))
        blocked = summary.counts.by_state.get(TaskState.BLOCKED, [])
        if blocked:
            lines.append(f"Blocked tasks: {', '.join(blocked)}")
    if summary.error:
        lines.append(f"Error: {summary.error}")
    return lines


def _counts_line(counts: TaskCounts) -> str:
    return (
        f"Tasks: total={counts.total} completed={counts.completed} "
        f"in_progress={counts.in_progress} pending={counts.pending} "
        f"blocked={counts.blocked} criteria={counts.criteria_satisfied}/{counts.criteria_total}"
    )
