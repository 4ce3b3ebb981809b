from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
from threading import Event
import time
from typing import Literal

from prloop.checks import CheckFilter
from prloop.config import MIN_SETTLE_DELAY_SECONDS, ConfigError
from prloop.models import Actionable, Happy, PrSnapshot, classification_name
from prloop.observability import log_event
from prloop.state_machine import PrEvaluation, evaluate_snapshot


WaitMode = Literal["actionable", "actionable_or_happy"]
Clock = Callable[[], datetime]
Sleep = Callable[[float], None]
IterationHook = Callable[[PrEvaluation], None]

LOGGER = logging.getLogger("prloop.poll_loop")


class PollCancelledError(RuntimeError):
    def __init__(self, *, iterations: int) -> None:
        super().__init__(f"Polling cancelled after {iterations} iteration(s)")
        self.iterations = iterations


class PollTimeoutError(RuntimeError):
    def __init__(self, *, elapsed_seconds: float, last_evaluation: PrEvaluation) -> None:
        super().__init__(f"Timed out after {int(elapsed_seconds)}s without a terminal state")
        self.elapsed_seconds = elapsed_seconds
        self.last_evaluation = last_evaluation


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PollLoop:
    def __init__(
        self,
        fetch_snapshot: Callable[[], PrSnapshot],
        check_filter: CheckFilter,
        *,
        poll_interval_seconds: float = 5.0,
        settle_delay_seconds: float = MIN_SETTLE_DELAY_SECONDS,
        require_checks: bool = False,
        clock: Clock = utc_now,
        sleep: Sleep | None = None,
        on_iteration: IterationHook | None = None,
        stop_event: Event | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ConfigError("poll_interval_seconds must be > 0")
        if settle_delay_seconds < MIN_SETTLE_DELAY_SECONDS:
            raise ConfigError(
                f"settle_delay_seconds must be >= {int(MIN_SETTLE_DELAY_SECONDS)}"
            )
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be > 0 if provided")
        self._fetch_snapshot = fetch_snapshot
        self._check_filter = check_filter
        self._poll_interval_seconds = poll_interval_seconds
        self._settle_delay_seconds = settle_delay_seconds
        self._require_checks = require_checks
        self._clock = clock
        if sleep is None:
            # Waiting on the stop event wakes the loop as soon as it is set.
            sleep = stop_event.wait if stop_event is not None else time.sleep
        self._sleep = sleep
        self._on_iteration = on_iteration
        self._stop_event = stop_event
        self._timeout_seconds = timeout_seconds

    def wait_until_actionable(self) -> PrEvaluation:
        return self._wait(mode="actionable")

    def wait_until_actionable_or_happy(self) -> PrEvaluation:
        return self._wait(mode="actionable_or_happy")

    def _wait(self, *, mode: WaitMode) -> PrEvaluation:
        started_at = self._clock()
        iterations = 0
        while True:
            self._raise_if_stopped(mode=mode, iterations=iterations)

            # Always a fresh snapshot: checks and threads change between polls.
            evaluation = evaluate_snapshot(
                self._fetch_snapshot(),
                self._check_filter,
                require_checks=self._require_checks,
            )
            iterations += 1
            # A stop requested during the fetch must not reach the hook.
            self._raise_if_stopped(mode=mode, iterations=iterations)
            if self._on_iteration is not None:
                self._on_iteration(evaluation)

            now = self._clock()
            if self._is_terminal(evaluation, mode=mode, now=now):
                log_event(
                    LOGGER,
                    "poll_terminal",
                    mode=mode,
                    iterations=iterations,
                    state=classification_name(evaluation.classification),
                )
                return evaluation

            log_event(
                LOGGER,
                "poll_iteration",
                mode=mode,
                iteration=iterations,
                state=classification_name(evaluation.classification),
                pending_checks=evaluation.checks.pending_names,
            )

            elapsed = (now - started_at).total_seconds()
            if self._timeout_seconds is not None and elapsed >= self._timeout_seconds:
                raise PollTimeoutError(elapsed_seconds=elapsed, last_evaluation=evaluation)

            self._sleep(self._poll_interval_seconds)

    def _raise_if_stopped(self, *, mode: WaitMode, iterations: int) -> None:
        if self._stop_event is not None and self._stop_event.is_set():
            log_event(LOGGER, "poll_cancelled", mode=mode, iterations=iterations)
            raise PollCancelledError(iterations=iterations)

    def _is_terminal(self, evaluation: PrEvaluation, *, mode: WaitMode, now: datetime) -> bool:
        classification = evaluation.classification
        if isinstance(classification, Actionable):
            return True
        if mode == "actionable" or not isinstance(classification, Happy):
            return False

        # A green run right after a push may predate the new CI runs.
        since_push = (now - evaluation.snapshot.last_pushed_at).total_seconds()
        if since_push >= self._settle_delay_seconds:
            return True
        log_event(
            LOGGER,
            "poll_settle_wait",
            pr_number=evaluation.snapshot.context.number,
            seconds_since_push=int(since_push),
            remaining_seconds=int(self._settle_delay_seconds - since_push),
        )
        return False
