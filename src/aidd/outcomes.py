"""Exit classification for agent iterations."""

from __future__ import annotations

from enum import Enum

from aidd.constants import (
    EXIT_ABORTED,
    EXIT_GENERAL_ERROR,
    EXIT_IDLE_TIMEOUT,
    EXIT_NO_ASSISTANT,
    EXIT_PROJECT_COMPLETE,
    EXIT_PROVIDER_ERROR,
    EXIT_RATE_LIMITED,
    EXIT_SIGNAL_TERMINATED,
    EXIT_SUCCESS,
)


class ExitOutcome(str, Enum):
    SUCCESS = "success"
    IDLE_TIMEOUT = "idle_timeout"
    PROVIDER_ERROR = "provider_error"
    NO_ASSISTANT_OUTPUT = "no_assistant_output"
    ABORTED = "aborted"
    PROJECT_COMPLETE = "project_complete"
    RATE_LIMITED = "rate_limited"
    SIGNAL_TERMINATED = "signal_terminated"
    OTHER_FAILURE = "other_failure"


_CODE_TO_OUTCOME: dict[int, ExitOutcome] = {
    EXIT_SUCCESS: ExitOutcome.SUCCESS,
    EXIT_NO_ASSISTANT: ExitOutcome.NO_ASSISTANT_OUTPUT,
    EXIT_IDLE_TIMEOUT: ExitOutcome.IDLE_TIMEOUT,
    EXIT_PROVIDER_ERROR: ExitOutcome.PROVIDER_ERROR,
    EXIT_PROJECT_COMPLETE: ExitOutcome.PROJECT_COMPLETE,
    EXIT_RATE_LIMITED: ExitOutcome.RATE_LIMITED,
    EXIT_SIGNAL_TERMINATED: ExitOutcome.SIGNAL_TERMINATED,
    EXIT_ABORTED: ExitOutcome.ABORTED,
}

_OUTCOME_TO_CODE: dict[ExitOutcome, int] = {
    outcome: code for code, outcome in _CODE_TO_OUTCOME.items()
}
_OUTCOME_TO_CODE[ExitOutcome.OTHER_FAILURE] = EXIT_GENERAL_ERROR

# Outcomes that never touch the consecutive-failure counter.
_NEUTRAL_OUTCOMES = frozenset({ExitOutcome.SUCCESS, ExitOutcome.PROJECT_COMPLETE, ExitOutcome.ABORTED})


def classify(raw_exit_code: int, killed_by_idle_monitor: bool = False) -> ExitOutcome:
    """Map a raw exit code to an outcome.

    Every integer maps to exactly one outcome; codes without a reserved
    meaning fall through to ``OTHER_FAILURE``.  An idle-monitor kill is
    reported as ``IDLE_TIMEOUT`` whatever code the dying process left behind.
    """
    if killed_by_idle_monitor:
        return ExitOutcome.IDLE_TIMEOUT
    return _CODE_TO_OUTCOME.get(int(raw_exit_code), ExitOutcome.OTHER_FAILURE)


def is_failure(outcome: ExitOutcome) -> bool:
    return outcome not in _NEUTRAL_OUTCOMES


def outcome_exit_code(outcome: ExitOutcome) -> int:
    return _OUTCOME_TO_CODE[outcome]
