"""Failure accumulation, two-phase completion and stop requests."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from aidd.constants import COMPLETED_MARKER, COMPLETION_PENDING_MARKER, STOP_FILENAME
from aidd.models import WorkStatus
from aidd.outcomes import ExitOutcome, is_failure
from aidd.utils import _utc_now


class FailureAccumulator:
    """Count consecutive failed iterations.

    ``SUCCESS`` resets the count, every failure outcome adds exactly one, and
    ``PROJECT_COMPLETE``/``ABORTED`` leave it alone.  A threshold of 0 never
    trips.
    """

    def __init__(self, threshold: int) -> None:
        self.threshold = max(0, int(threshold))
        self.count = 0

    def record(self, outcome: ExitOutcome) -> int:
        if outcome is ExitOutcome.SUCCESS:
            self.count = 0
        elif is_failure(outcome):
            self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0

    @property
    def threshold_reached(self) -> bool:
        return self.threshold > 0 and self.count >= self.threshold


class GateDecision(str, Enum):
    CONTINUE = "continue"
    PENDING = "pending"
    COMPLETE = "complete"
    RESUMED = "resumed"


def _pending_path(metadata_dir: Path) -> Path:
    return metadata_dir / COMPLETION_PENDING_MARKER


def _completed_path(metadata_dir: Path) -> Path:
    return metadata_dir / COMPLETED_MARKER


def is_completed(metadata_dir: Path) -> bool:
    return _completed_path(metadata_dir).exists()


def is_completion_pending(metadata_dir: Path) -> bool:
    return _pending_path(metadata_dir).exists()


def completion_state(metadata_dir: Path) -> str:
    if is_completed(metadata_dir):
        return "completed"
    if is_completion_pending(metadata_dir):
        return "pending"
    return "open"


class CompletionGate:
    """Two-phase completion markers in the metadata directory.

    The first completion signal writes the pending marker and asks for one
    more confirmatory iteration.  A second signal while pending writes the
    completed marker.  Open work found after a non-failing iteration removes
    the pending marker.  Failures while pending leave it in place for the next
    attempt.  Markers are written only from ``observe``, which the loop calls
    after an iteration has finished.
    """

    def __init__(self, metadata_dir: Path) -> None:
        self.metadata_dir = metadata_dir

    @property
    def pending(self) -> bool:
        return is_completion_pending(self.metadata_dir)

    @property
    def completed(self) -> bool:
        return is_completed(self.metadata_dir)

    def observe(self, outcome: ExitOutcome, work: WorkStatus) -> GateDecision:
        if outcome is ExitOutcome.PROJECT_COMPLETE or (
            outcome is ExitOutcome.SUCCESS and not work.has_open_work
        ):
            if self.pending:
                self._write_completed()
                return GateDecision.COMPLETE
            self._write_pending()
            return GateDecision.PENDING
        if self.pending and work.has_open_work and not is_failure(outcome):
            self.clear_pending()
            return GateDecision.RESUMED
        return GateDecision.CONTINUE

    def clear_pending(self) -> None:
        _pending_path(self.metadata_dir).unlink(missing_ok=True)

    def _write_pending(self) -> None:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        _pending_path(self.metadata_dir).write_text(f"{_utc_now()}\n", encoding="utf-8")

    def _write_completed(self) -> None:
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        _completed_path(self.metadata_dir).write_text(f"{_utc_now()}\n", encoding="utf-8")
        self.clear_pending()


# ---------------------------------------------------------------------------
# Stop requests
# ---------------------------------------------------------------------------


def stop_file_path(metadata_dir: Path) -> Path:
    return metadata_dir / STOP_FILENAME


def request_stop(metadata_dir: Path, *, reason: str = "") -> Path:
    path = stop_file_path(metadata_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{_utc_now()} {reason}".rstrip() + "\n", encoding="utf-8")
    return path


def stop_requested(metadata_dir: Path) -> bool:
    return stop_file_path(metadata_dir).exists()


def consume_stop_request(metadata_dir: Path) -> bool:
    """Remove the stop file; True when one was present."""
    path = stop_file_path(metadata_dir)
    if not path.exists():
        return False
    path.unlink(missing_ok=True)
    return True
