"""aidd data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO

from aidd.constants import ITERATIONS_DIRNAME


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


class ConfigError(RuntimeError):
    """Raised when run configuration is invalid."""


class AdapterError(RuntimeError):
    """Raised when an agent CLI adapter cannot be resolved or used."""


class ProjectError(RuntimeError):
    """Raised when the project directory or its prompts cannot be resolved."""


@dataclass(frozen=True)
class RunConfig:
    project_dir: Path
    metadata_dir: Path
    cli: str
    max_iterations: int | None
    idle_timeout: float
    nudge_timeout: float
    timeout: float
    failure_threshold: int
    failure_scope: str
    continue_on_timeout: bool
    no_clean: bool
    rate_limit_backoff: float
    rate_limit_buffer: float
    max_no_change_iterations: int
    nudge_message: str
    model: str = ""
    init_model: str = ""
    code_model: str = ""
    spec_file: Path | None = None
    todo: bool = False
    validate: bool = False
    in_progress: bool = False
    directive: str = ""
    audits: tuple[str, ...] = ()
    stop_when_done: bool = False
    resources_dir: Path | None = None

    @property
    def iterations_dir(self) -> Path:
        return self.metadata_dir / ITERATIONS_DIRNAME


@dataclass
class IterationState:
    """Mutable loop state, created per run and threaded through the loop."""

    iteration: int = 1
    log_index: int = 1
    consecutive_failures: int = 0
    completion_pending: bool = False
    completed: bool = False
    stop_requested: bool = False
    no_change_streak: int = 0
    last_outcome: Any = None
    last_exit_code: int = 0


@dataclass
class ProcessHandle:
    pid: int
    stdin: TextIO | None
    stdout: TextIO | None
    started_at: float
    log_path: Path


@dataclass(frozen=True)
class SupervisedRun:
    raw_exit_code: int
    killed_by_idle_monitor: bool
    nudge_sent: bool
    log_path: Path
    duration_seconds: float
    detected_marker: str = ""
    rate_limit_hint: str = ""
    error: str = ""


@dataclass(frozen=True)
class WorkStatus:
    """Snapshot of remaining work found by project inspection."""

    has_open_work: bool
    open_features: int = 0
    passing_features: int = 0
    open_todos: int = 0
    inspected: bool = True


@dataclass(frozen=True)
class PromptSelection:
    name: str
    text: str


@dataclass(frozen=True)
class IterationRecord:
    iteration: int
    log_index: int
    prompt_name: str
    outcome: str
    raw_exit_code: int
    consecutive_failures: int
    gate_decision: str = ""


@dataclass(frozen=True)
class RunSummary:
    outcome: Any
    exit_code: int
    iterations_run: int
    last_outcome: Any = None
    last_exit_code: int = 0
    message: str = ""
    records: tuple[IterationRecord, ...] = field(default_factory=tuple)
