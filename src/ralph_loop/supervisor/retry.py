"""Fixed-delay retry policy around one agent iteration."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ralph_loop.supervisor.models import AttemptOutcome

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


@dataclass(slots=True)
class RetryOutcome:
    """Final attempt of an iteration plus how it was reached."""

    outcome: AttemptOutcome
    attempts: int
    gave_up: bool
    history: list[AttemptOutcome] = field(default_factory=list)


class RetryPolicy:
    """Retry transient attempts up to ``max_attempts`` with a fixed delay.

    Failures are usually rate-limit windows of known size, so the delay does
    not grow between attempts. Fatal attempts are never retried.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        delay_seconds: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0.")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0.")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def execute(
        self,
        attempt: Callable[[int], AttemptOutcome],
        *,
        on_retry: Callable[[AttemptOutcome, float], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> RetryOutcome:
        """Call ``attempt(attempt_no)`` until it succeeds, turns fatal or retries run out."""

        history: list[AttemptOutcome] = []
        for attempt_no in range(1, self.max_attempts + 1):
            outcome = attempt(attempt_no)
            history.append(outcome)
            if not outcome.is_transient:
                return RetryOutcome(
                    outcome=outcome,
                    attempts=attempt_no,
                    gave_up=False,
                    history=history,
                )
            if attempt_no >= self.max_attempts:
                break
            if _stopped(should_stop):
                logger.info("Stop requested; not retrying after attempt %d", attempt_no)
                break

            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.0fs",
                attempt_no,
                self.max_attempts,
                outcome.reason_code,
                self.delay_seconds,
            )
            if on_retry is not None:
                on_retry(outcome, self.delay_seconds)
            if should_stop is None:
                self._sleep(self.delay_seconds)
                continue
            sleep_until_stopped(self.delay_seconds, sleep=self._sleep, should_stop=should_stop)
            if should_stop():
                logger.info("Stop requested during retry delay after attempt %d", attempt_no)
                break

        return RetryOutcome(
            outcome=history[-1],
            attempts=len(history),
            gave_up=True,
            history=history,
        )


def sleep_until_stopped(
    seconds: float,
    *,
    sleep: Callable[[float], None],
    should_stop: Callable[[], bool],
    step: float = 0.1,
) -> None:
    """Sleep ``seconds`` in ``step`` slices, returning early once ``should_stop()`` is true."""

    remaining = seconds
    while remaining > _EPSILON and not should_stop():
        chunk = min(step, remaining)
        sleep(chunk)
        remaining -= chunk


def _stopped(should_stop: Callable[[], bool] | None) -> bool:
    return should_stop is not None and should_stop()
