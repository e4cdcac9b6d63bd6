from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from ralph_loop.supervisor.backend import AgentRunRequest, AgentRunResult, BackendRunError
from ralph_loop.supervisor.controllers import LoopRunCommand, SupervisorCliController
from ralph_loop.supervisor.failure_classifier import ALL_BLOCKED_SENTINEL, COMPLETE_SENTINEL
from ralph_loop.supervisor.loop import Supervisor, render_summary_lines
from ralph_loop.supervisor.models import SupervisorState
from ralph_loop.supervisor.notifications import NotificationEvent
from ralph_loop.supervisor.retry import RetryPolicy
from ralph_loop.tasks import TaskList, read_task_document, write_task_document

pytestmark = [
    allure.epic("Supervisor"),
    allure.feature("Iteration Loop"),
]

_TWO_TASKS = """\
# Plan

## US-001: Parser
- [ ] Parses headings
- [ ] Parses criteria

## US-002: Renderer
- [ ] Renders unchanged text
"""


class _ScriptedRunner:
    def __init__(self, step: Callable[[int, AgentRunRequest], AgentRunResult]) -> None:
        self.step = step
        self.requests: list[AgentRunRequest] = []

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        self.requests.append(request)
        return self.step(len(self.requests), request)


class _RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[NotificationEvent, str]] = []

    def emit(self, event: NotificationEvent, message: str) -> None:
        self.events.append((event, message))

    def kinds(self) -> list[NotificationEvent]:
        return [event for event, _ in self.events]


def _supervisor(
    task_list: TaskList,
    runner: _ScriptedRunner,
    sink: _RecordingSink,
    *,
    max_iterations: int = 10,
    max_attempts: int = 3,
    echo: Callable[[str], None] | None = None,
) -> Supervisor:
    return Supervisor(
        task_list=task_list,
        runner=runner,
        retry_policy=RetryPolicy(max_attempts=max_attempts, delay_seconds=0, sleep=lambda _: None),
        sink=sink,
        working_dir=task_list.path.parent,
        model="opus",
        command_template="agent {prompt}",
        max_iterations=max_iterations,
        sleep_seconds=0,
        echo=echo,
        sleep=lambda _: None,
    )


def _tick_one(path: Path) -> str | None:
    document = read_task_document(path)
    for task in document.tasks:
        for index, criterion in enumerate(task.criteria):
            if not criterion.satisfied:
                write_task_document(path, document.set_criterion(task.task_id, index, satisfied=True))
                return f"{task.task_id}#{index}"
    return None


def _task_list(tmp_path: Path, text: str) -> TaskList:
    path = tmp_path / "PRD.md"
    path.write_text(text, encoding="utf-8")
    return TaskList(path)


def test_ticks_criteria_until_complete_sentinel(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        ticked = _tick_one(task_list.path)
        if ticked is None:
            return AgentRunResult(exit_code=0, output=f"all done\n{COMPLETE_SENTINEL}\n")
        return AgentRunResult(exit_code=0, output=f"checked {ticked}\n")

    runner = _ScriptedRunner(_step)
    sink = _RecordingSink()

    summary = _supervisor(task_list, runner, sink).run()

    assert summary.state == SupervisorState.COMPLETE
    assert summary.exit_code == 0
    assert summary.iterations == 4
    assert len(runner.requests) == 4
    assert summary.counts.completed == 2
    assert sink.kinds() == [NotificationEvent.ITERATION] * 3 + [NotificationEvent.COMPLETE]


def test_transient_iteration_gives_up_and_loop_continues(tmp_path) -> None:
    task_list = _task_list(tmp_path, "## US-001: Only\n- [ ] one\n")
    runner = _ScriptedRunner(
        lambda call_no, request: AgentRunResult(exit_code=0, output="API Error: 529 overloaded"),
    )
    sink = _RecordingSink()

    summary = _supervisor(task_list, runner, sink, max_iterations=2, max_attempts=3).run()

    assert summary.state == SupervisorState.MAX_ITERATIONS
    assert summary.exit_code == 1
    assert summary.iterations == 2
    assert summary.failed_iterations == 2
    assert summary.attempts == 6
    assert len(runner.requests) == 6
    assert sink.kinds() == [
        NotificationEvent.RETRY,
        NotificationEvent.RETRY,
        NotificationEvent.ERROR,
        NotificationEvent.RETRY,
        NotificationEvent.RETRY,
        NotificationEvent.ERROR,
        NotificationEvent.MAX_ITERATIONS,
    ]


def test_all_blocked_sentinel_stops_after_first_iteration(tmp_path) -> None:
    task_list = _task_list(
        tmp_path,
        "## US-001: A\n- [ ] a\n**Blocked:** no creds\n## US-002: B\n- [ ] b\nBlocked: flaky\n",
    )
    runner = _ScriptedRunner(
        lambda call_no, request: AgentRunResult(exit_code=0, output=ALL_BLOCKED_SENTINEL),
    )
    sink = _RecordingSink()

    summary = _supervisor(task_list, runner, sink).run()

    assert summary.state == SupervisorState.ALL_BLOCKED
    assert summary.exit_code == 2
    assert summary.iterations == 1
    assert len(runner.requests) == 1
    assert sink.kinds() == [NotificationEvent.ALL_BLOCKED]


def test_dirty_tree_halts_before_any_agent_call(git_repo, git) -> None:
    (git_repo / "PRD.md").write_text(_TWO_TASKS, encoding="utf-8")
    git(git_repo, "add", "PRD.md")
    git(git_repo, "commit", "-q", "-m", "tasks")
    (git_repo / "uncommitted.txt").write_text("wip\n", encoding="utf-8")
    runner = _ScriptedRunner(lambda call_no, request: pytest.fail("agent must not run"))

    result = SupervisorCliController(runner=runner, sleep=lambda _: None).run(
        LoopRunCommand(project_dir=git_repo, sleep_seconds=0),
    )

    assert result.exit_code == 1
    assert runner.requests == []
    assert result.lines[0].startswith("Precondition failed:")
    assert "uncommitted.txt" in result.lines[0]


def test_completion_is_not_inferred_from_counts(tmp_path) -> None:
    task_list = _task_list(tmp_path, "## US-001: Done\n- [x] a\n")
    runner = _ScriptedRunner(lambda call_no, request: AgentRunResult(exit_code=0, output="ok"))
    sink = _RecordingSink()

    summary = _supervisor(task_list, runner, sink, max_iterations=3).run()

    assert summary.state == SupervisorState.MAX_ITERATIONS
    assert summary.iterations == 3


def test_fatal_backend_error_ends_run(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        raise BackendRunError("Agent command not found: agent", transient=False)

    runner = _ScriptedRunner(_step)
    sink = _RecordingSink()

    summary = _supervisor(task_list, runner, sink).run()

    assert summary.state == SupervisorState.FATAL
    assert summary.exit_code == 1
    assert summary.attempts == 1
    assert "Agent command not found" in summary.error
    assert sink.kinds() == [NotificationEvent.FATAL]


def test_transient_backend_error_is_retried(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        if call_no == 1:
            raise BackendRunError("Agent command failed to start: EAGAIN", transient=True)
        return AgentRunResult(exit_code=0, output=COMPLETE_SENTINEL)

    summary = _supervisor(task_list, _ScriptedRunner(_step), _RecordingSink()).run()

    assert summary.state == SupervisorState.COMPLETE
    assert summary.attempts == 2
    assert summary.failed_iterations == 0


def test_task_list_removed_mid_run_is_fatal(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        task_list.path.unlink()
        return AgentRunResult(exit_code=0, output="cleaned up")

    summary = _supervisor(task_list, _ScriptedRunner(_step), _RecordingSink()).run()

    assert summary.state == SupervisorState.FATAL
    assert summary.iterations == 1


def test_stop_request_interrupts_between_iterations(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)
    supervisor: Supervisor | None = None

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        assert request.shutdown_requested is not None
        assert not request.shutdown_requested()
        supervisor.request_stop(signal_name="SIGINT")
        assert request.shutdown_requested()
        return AgentRunResult(exit_code=0, output="partial work", interrupted=True)

    sink = _RecordingSink()
    supervisor = _supervisor(task_list, _ScriptedRunner(_step), sink)

    summary = supervisor.run()

    assert summary.state == SupervisorState.INTERRUPTED
    assert summary.exit_code == 1
    assert summary.iterations == 1
    assert sink.kinds() == []


def test_prompt_is_fixed_and_names_task_list_and_working_dir(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)
    runner = _ScriptedRunner(lambda call_no, request: AgentRunResult(exit_code=0, output="ok"))

    _supervisor(task_list, runner, _RecordingSink(), max_iterations=2).run()

    first, second = runner.requests
    assert first.prompt == second.prompt
    assert f"Task list: {task_list.path}" in first.prompt
    assert f"Working directory: {tmp_path}" in first.prompt
    assert COMPLETE_SENTINEL in first.prompt
    assert first.working_dir == tmp_path
    assert first.model == "opus"


def test_banner_and_summary_lines(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)
    echoed: list[str] = []
    runner = _ScriptedRunner(
        lambda call_no, request: AgentRunResult(exit_code=0, output=COMPLETE_SENTINEL),
    )

    summary = _supervisor(task_list, runner, _RecordingSink(), echo=echoed.append).run()
    lines = render_summary_lines(summary)

    assert echoed[0] == "=== Iteration 1/10 === next=US-001: Parser"
    assert echoed[1].startswith("Tasks: total=2 ")
    assert lines[0].startswith("Supervisor summary: state=complete exit_code=0 iterations=1")
    assert "criteria=0/3" in lines[1]


def test_invalid_loop_settings_rejected(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)

    with pytest.raises(ValueError):
        _supervisor(task_list, _ScriptedRunner(lambda *_: None), _RecordingSink(), max_iterations=0)


def test_stop_during_retry_delay_launches_no_new_agent(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)
    supervisor: Supervisor | None = None
    stop_seen_at_launch: list[bool] = []

    def _step(call_no: int, request: AgentRunRequest) -> AgentRunResult:
        stop_seen_at_launch.append(request.shutdown_requested())
        return AgentRunResult(exit_code=1, output="API Error: 529 overloaded")

    def _retry_sleep(seconds: float) -> None:
        supervisor.request_stop(signal_name="SIGINT")

    sink = _RecordingSink()
    supervisor = Supervisor(
        task_list=task_list,
        runner=_ScriptedRunner(_step),
        retry_policy=RetryPolicy(max_attempts=3, delay_seconds=10, sleep=_retry_sleep),
        sink=sink,
        working_dir=tmp_path,
        model="opus",
        command_template="agent {prompt}",
        sleep_seconds=0,
        sleep=lambda _: None,
    )

    summary = supervisor.run()

    assert stop_seen_at_launch == [False]
    assert summary.state == SupervisorState.INTERRUPTED
    assert summary.attempts == 1
    assert sink.kinds() == [NotificationEvent.RETRY]


def test_pause_between_iterations_follows_injected_sleep(tmp_path) -> None:
    task_list = _task_list(tmp_path, _TWO_TASKS)
    slept: list[float] = []
    runner = _ScriptedRunner(lambda call_no, request: AgentRunResult(exit_code=0, output="ok"))

    summary = Supervisor(
        task_list=task_list,
        runner=runner,
        retry_policy=RetryPolicy(max_attempts=1, delay_seconds=0, sleep=lambda _: None),
        sink=_RecordingSink(),
        working_dir=tmp_path,
        model="opus",
        command_template="agent {prompt}",
        max_iterations=2,
        sleep_seconds=3600,
        sleep=slept.append,
    ).run()

    assert summary.state == SupervisorState.MAX_ITERATIONS
    assert sum(slept) == pytest.approx(3600)
    assert max(slept) <= 0.1 + 1e-9


def test_model_routed_by_next_task_prefix(tmp_path) -> None:
    task_list = _task_list(
        tmp_path,
        "## V-001: Verify login\n- [ ] a\n\n"
        "## BUG-002: Crash\n- [ ] b\n\n"
        "## DOC-003: Docs\n- [ ] c\n",
    )
    runner = _ScriptedRunner(lambda call_no, request: _tick_then_report(task_list.path))

    Supervisor(
        task_list=task_list,
        runner=runner,
        retry_policy=RetryPolicy(max_attempts=1, delay_seconds=0, sleep=lambda _: None),
        sink=_RecordingSink(),
        working_dir=tmp_path,
        model="opus",
        model_routes={"V": "haiku", "BUG": "sonnet"},
        command_template="agent {prompt}",
        max_iterations=4,
        sleep_seconds=0,
        sleep=lambda _: None,
    ).run()

    assert [request.model for request in runner.requests] == ["haiku", "sonnet", "opus", "opus"]


def _tick_then_report(path: Path) -> AgentRunResult:
    ticked = _tick_one(path)
    if ticked is None:
        return AgentRunResult(exit_code=0, output=COMPLETE_SENTINEL)
    return AgentRunResult(exit_code=0, output=f"checked {ticked}\n")
