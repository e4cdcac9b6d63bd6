"""Deterministic classification of agent output for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from ralph_loop.config import DEFAULT_TRANSIENT_MARKERS
from ralph_loop.supervisor.models import AttemptClassification, LoopSignal

COMPLETE_SENTINEL = "<promise>COMPLETE</promise>"
ALL_BLOCKED_SENTINEL = "<promise>ALL_BLOCKED</promise>"


@dataclass(slots=True)
class AgentOutputClassification:
    """Normalized classification result."""

    classification: AttemptClassification
    signal: LoopSignal
    reason_code: str
    matched_rule: str
    matched_pattern: str | None


def classify_agent_output(
    *,
    exit_code: int,
    output: str,
    transient_markers: tuple[str, ...] = DEFAULT_TRANSIENT_MARKERS,
) -> AgentOutputClassification:
    """Classify one finished attempt; transience wins over any sentinel."""

    if exit_code != 0:
        return AgentOutputClassification(
            classification=AttemptClassification.TRANSIENT_ERROR,
            signal=LoopSignal.CONTINUE,
            reason_code=f"exit_code_{exit_code}",
            matched_rule="non_zero_exit",
            matched_pattern=None,
        )

    if not output.strip():
        return AgentOutputClassification(
            classification=AttemptClassification.TRANSIENT_ERROR,
            signal=LoopSignal.CONTINUE,
            reason_code="empty_response",
            matched_rule="empty_output",
            matched_pattern=None,
        )

    pattern = _first_match(output.lower(), transient_markers)
    if pattern is not None:
        return AgentOutputClassification(
            classification=AttemptClassification.TRANSIENT_ERROR,
            signal=LoopSignal.CONTINUE,
            reason_code="transient_marker",
            matched_rule="transient_marker",
            matched_pattern=pattern,
        )

    sentinel_lines = {line.strip() for line in output.splitlines()}
    if COMPLETE_SENTINEL in sentinel_lines:
        return AgentOutputClassification(
            classification=AttemptClassification.SUCCESS,
            signal=LoopSignal.COMPLETE,
            reason_code="complete_sentinel",
            matched_rule="complete_sentinel",
            matched_pattern=COMPLETE_SENTINEL,
        )
    if ALL_BLOCKED_SENTINEL in sentinel_lines:
        return AgentOutputClassification(
            classification=AttemptClassification.SUCCESS,
            signal=LoopSignal.ALL_BLOCKED,
            reason_code="all_blocked_sentinel",
            matched_rule="all_blocked_sentinel",
            matched_pattern=ALL_BLOCKED_SENTINEL,
        )

    return AgentOutputClassification(
        classification=AttemptClassification.SUCCESS,
        signal=LoopSignal.CONTINUE,
        reason_code="continue",
        matched_rule="no_sentinel",
        matched_pattern=None,
    )


def classify_backend_error(*, transient: bool) -> AgentOutputClassification:
    """Classify an agent that could not be started at all."""

    if transient:
        return AgentOutputClassification(
            classification=AttemptClassification.TRANSIENT_ERROR,
            signal=LoopSignal.CONTINUE,
            reason_code="backend_start_transient",
            matched_rule="backend_run_error",
            matched_pattern=None,
        )
    return AgentOutputClassification(
        classification=AttemptClassification.FATAL_ERROR,
        signal=LoopSignal.CONTINUE,
        reason_code="backend_start_failed",
        matched_rule="backend_run_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        normalized = pattern.lower()
        if normalized and normalized in haystack:
            return pattern
    return None
