"""Two-stage idle detection for a supervised agent process.

The monitor only tracks time; it never touches the process.  The supervisor
feeds it output activity, asks it what to do at each wake-up, and carries out
the returned action (write the nudge, or kill the process).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from aidd.models import ConfigError


class IdleState(str, Enum):
    ACTIVE = "active"
    NUDGED = "nudged"
    EXPIRED = "expired"


class IdleAction(str, Enum):
    NONE = "none"
    NUDGE = "nudge"
    EXPIRE = "expire"


@dataclass
class ActivityTracker:
    last_activity: float
    nudge_sent: bool = False


def validate_idle_timeouts(idle_timeout: float, nudge_timeout: float) -> None:
    if nudge_timeout <= 0:
        raise ConfigError(f"idle nudge timeout must be positive, got {nudge_timeout}")
    if idle_timeout <= nudge_timeout:
        raise ConfigError(
            f"idle timeout ({idle_timeout:g}s) must be greater than idle nudge timeout ({nudge_timeout:g}s)"
        )


class IdleMonitor:
    """ACTIVE -> NUDGED -> EXPIRED state machine over an ActivityTracker.

    The nudge fires after ``nudge_timeout`` seconds without output.  Expiry
    fires ``idle_timeout - nudge_timeout`` seconds after the nudge if the
    process stays silent, so a fully silent process dies ``idle_timeout``
    seconds after its last output.  Output in either live state returns the
    monitor to ACTIVE.  Only the first quiet period of an iteration produces
    a NUDGE action; later quiet periods move to NUDGED silently.
    """

    def __init__(
        self,
        idle_timeout: float,
        nudge_timeout: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        validate_idle_timeouts(idle_timeout, nudge_timeout)
        self.idle_timeout = float(idle_timeout)
        self.nudge_timeout = float(nudge_timeout)
        self._clock = clock
        self.tracker = ActivityTracker(last_activity=clock())
        self.state = IdleState.ACTIVE
        self._nudged_at: float | None = None

    @property
    def expiry_window(self) -> float:
        return self.idle_timeout - self.nudge_timeout

    def record_activity(self) -> None:
        if self.state is IdleState.EXPIRED:
            return
        self.tracker.last_activity = self._clock()
        self.state = IdleState.ACTIVE
        self._nudged_at = None

    def check(self) -> IdleAction:
        if self.state is IdleState.EXPIRED:
            return IdleAction.NONE
        now = self._clock()
        if self.state is IdleState.ACTIVE:
            if now - self.tracker.last_activity < self.nudge_timeout:
                return IdleAction.NONE
            self.state = IdleState.NUDGED
            self._nudged_at = now
            if self.tracker.nudge_sent:
                return IdleAction.NONE
            self.tracker.nudge_sent = True
            return IdleAction.NUDGE
        assert self._nudged_at is not None
        if now - self._nudged_at >= self.expiry_window:
            self.state = IdleState.EXPIRED
            return IdleAction.EXPIRE
        return IdleAction.NONE

    def seconds_until_deadline(self) -> float:
        """Time until the next state transition could fire, never negative."""
        if self.state is IdleState.EXPIRED:
            return 0.0
        now = self._clock()
        if self.state is IdleState.ACTIVE:
            remaining = self.tracker.last_activity + self.nudge_timeout - now
        else:
            assert self._nudged_at is not None
            remaining = self._nudged_at + self.expiry_window - now
        return max(0.0, remaining)
