"""Iteration loop driver."""

from __future__ import annotations

import shutil
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from aidd.adapters import AgentAdapter
from aidd.constants import (
    EXIT_GENERAL_ERROR,
    RATE_LIMIT_RESET_PATTERN,
    SPEC_FILENAME,
)
from aidd.gate import (
    CompletionGate,
    FailureAccumulator,
    GateDecision,
    consume_stop_request,
    stop_requested,
)
from aidd.logs import clean_iteration_logs, iteration_log_path, next_log_index
from aidd.models import (
    IterationRecord,
    IterationState,
    PromptSelection,
    RunConfig,
    RunSummary,
    SupervisedRun,
)
from aidd.outcomes import ExitOutcome, classify, outcome_exit_code
from aidd.project import count_in_progress_features, count_open_todos, inspect_work, write_status
from aidd.prompts import select_prompt
from aidd.supervisor import ProcessSupervisor
from aidd.sync import copy_templates, sync_resources
from aidd.utils import _append_log, _collect_change_snapshot, _is_git_worktree

# Prompts that work on an already planned project and need no templates.
_PLANNED_PROMPTS = frozenset({"coding", "directive", "audit"})


def rate_limit_wait_seconds(
    hint: str,
    *,
    now: datetime,
    backoff: float,
    buffer: float,
) -> float:
    """Seconds to wait after a rate limit.

    ``hint`` is the agent output line that reported the limit.  When it names
    a reset time ("resets 3pm (America/New_York)") the wait runs until the
    next occurrence of that time plus ``buffer``; otherwise it is ``backoff``.
    """
    match = RATE_LIMIT_RESET_PATTERN.search(hint or "")
    if match is None:
        return backoff
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    meridiem = (match.group("meridiem") or "").lower()
    if meridiem:
        if not 1 <= hour <= 12:
            return backoff
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        return backoff
    zone_name = match.group("zone")
    try:
        zone = ZoneInfo(zone_name) if zone_name and zone_name.upper() != "UTC" else timezone.utc
    except (ZoneInfoNotFoundError, ValueError):
        return backoff
    local_now = now.astimezone(zone)
    reset = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if reset <= local_now:
        reset += timedelta(days=1)
    return (reset - local_now).total_seconds() + buffer


class IterationLoop:
    """Run agent iterations until completion, a stop request, or a hard stop."""

    def __init__(
        self,
        config: RunConfig,
        adapter: AgentAdapter,
        *,
        supervisor: ProcessSupervisor | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        out: TextIO | None = None,
        err: TextIO | None = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.supervisor = supervisor or ProcessSupervisor(
            idle_timeout=config.idle_timeout,
            nudge_timeout=config.nudge_timeout,
            timeout=config.timeout,
            log_event=self._log,
        )
        self._sleep = sleep
        self._now = now
        self._out = out
        self._err = err
        self.gate = CompletionGate(config.metadata_dir)
        self.records: list[IterationRecord] = []

    # ------------------------------------------------------------------
    # output helpers
    # ------------------------------------------------------------------

    def _log(self, message: str) -> None:
        _append_log(self.config.metadata_dir, message)

    def _say(self, message: str) -> None:
        print(f"aidd run: {message}", file=self._out or sys.stdout)
        self._log(message)

    def _warn(self, message: str) -> None:
        print(f"aidd run: WARN {message}", file=self._err or sys.stderr)
        self._log(f"WARN {message}")

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        config = self.config
        config.metadata_dir.mkdir(parents=True, exist_ok=True)
        if consume_stop_request(config.metadata_dir):
            self._warn("removed stale stop file from a previous run")
        for note in self.adapter.prepare(config.project_dir):
            self._say(note)

        state = IterationState(log_index=next_log_index(config.iterations_dir))
        accumulator = FailureAccumulator(config.failure_threshold)
        audits = config.audits or ("",)
        self._say(
            f"start cli={self.adapter.name} project={config.project_dir} "
            f"max_iterations={config.max_iterations or 'unbounded'} "
            f"idle_timeout={config.idle_timeout:g}s nudge_timeout={config.nudge_timeout:g}s "
            f"failure_threshold={config.failure_threshold or 'none'} next_log={state.log_index:03d}"
        )

        summary: RunSummary | None = None
        try:
            for audit_number, audit_name in enumerate(audits, start=1):
                if audit_name and len(audits) > 1:
                    self._say(f"audit {audit_number} of {len(audits)}: {audit_name}")
                if config.failure_scope == "audit":
                    accumulator.reset()
                state.iteration = 1
                state.no_change_streak = 0
                summary = self._run_iterations(state, accumulator, audit_name=audit_name)
                if summary.outcome is not ExitOutcome.SUCCESS:
                    break
        except KeyboardInterrupt:
            self._warn("interrupted by operator")
            summary = self._halt(state, ExitOutcome.ABORTED, "interrupted by operator", iterations_run=0)
        finally:
            if not config.no_clean:
                cleaned = clean_iteration_logs(config.iterations_dir)
                if cleaned:
                    self._log(f"cleaned {cleaned} iteration log(s)")

        assert summary is not None
        final = RunSummary(
            outcome=summary.outcome,
            exit_code=summary.exit_code,
            iterations_run=len(self.records),
            last_outcome=state.last_outcome,
            last_exit_code=state.last_exit_code,
            message=summary.message,
            records=tuple(self.records),
        )
        self._say(
            f"finished outcome={final.outcome.value} exit_code={final.exit_code} "
            f"iterations={final.iterations_run} "
            f"last_outcome={final.last_outcome.value if final.last_outcome else 'none'} "
            f"consecutive_failures={state.consecutive_failures}"
            + (f" ({final.message})" if final.message else "")
        )
        return final

    def _halt(
        self,
        state: IterationState,
        outcome: ExitOutcome,
        message: str,
        *,
        iterations_run: int,
        exit_code: int | None = None,
    ) -> RunSummary:
        return RunSummary(
            outcome=outcome,
            exit_code=outcome_exit_code(outcome) if exit_code is None else exit_code,
            iterations_run=iterations_run,
            last_outcome=state.last_outcome,
            last_exit_code=state.last_exit_code,
            message=message,
        )

    def _mode_work_done(self) -> bool:
        config = self.config
        if config.todo:
            return count_open_todos(config.metadata_dir) == 0
        if config.in_progress:
            return count_in_progress_features(config.metadata_dir) == 0
        return False

    def _prepare_iteration(self, audit_name: str) -> PromptSelection:
        config = self.config
        prompt = select_prompt(config, audit_name=audit_name)
        if prompt.name not in _PLANNED_PROMPTS:
            copy_templates(config.metadata_dir)
        if prompt.name == "initializer" and config.spec_file is not None:
            shutil.copyfile(config.spec_file, config.metadata_dir / SPEC_FILENAME)
        report = sync_resources(config.project_dir, config.resources_dir or config.metadata_dir)
        if report.copied or report.skipped or report.failed:
            self._log(f"resource sync {report.summary()}")
        if report.failed:
            self._warn(f"resource sync failures: {'; '.join(report.failed)}")
        write_status(config.project_dir, config.metadata_dir)
        return prompt

    def _run_iterations(
        self,
        state: IterationState,
        accumulator: FailureAccumulator,
        *,
        audit_name: str,
    ) -> RunSummary:
        config = self.config
        track_changes = (
            config.max_iterations is None
            and config.max_no_change_iterations > 0
            and _is_git_worktree(config.project_dir)
        )
        iterations_run = 0

        while True:
            # -- boundary checks --------------------------------------------
            if not audit_name and self.gate.completed:
                state.completed = True
                return self._halt(
                    state, ExitOutcome.PROJECT_COMPLETE, "completed marker present", iterations_run=iterations_run
                )
            if stop_requested(config.metadata_dir):
                consume_stop_request(config.metadata_dir)
                state.stop_requested = True
                return self._halt(state, ExitOutcome.ABORTED, "stop requested", iterations_run=iterations_run)
            if config.max_iterations is not None and state.iteration > config.max_iterations:
                return self._halt(
                    state,
                    ExitOutcome.SUCCESS,
                    f"reached max iterations ({config.max_iterations})",
                    iterations_run=iterations_run,
                )
            if config.stop_when_done and self._mode_work_done():
                return self._halt(state, ExitOutcome.SUCCESS, "no items left for this mode", iterations_run=iterations_run)

            # -- prepare -------------------------------------------------------
            before = _collect_change_snapshot(config.project_dir) if track_changes else None
            log_index = state.log_index
            log_path = iteration_log_path(config.iterations_dir, log_index)
            try:
                prompt = self._prepare_iteration(audit_name)
            except (OSError, ValueError) as exc:
                prompt = None
                self._warn(f"iteration {state.iteration}: preparation failed: {exc}")
                result = SupervisedRun(
                    raw_exit_code=EXIT_GENERAL_ERROR,
                    killed_by_idle_monitor=False,
                    nudge_sent=False,
                    log_path=log_path,
                    duration_seconds=0.0,
                    error=f"preparation failed: {exc}",
                )

            # -- supervise -----------------------------------------------------
            if prompt is not None:
                state.log_index += 1
                self._say(f"iteration {state.iteration}: prompt={prompt.name} log={log_path}")
                result = self.supervisor.run(
                    self.adapter,
                    prompt,
                    config.project_dir,
                    log_path,
                    iteration=state.iteration,
                )
                if result.error:
                    self._warn(f"iteration {state.iteration}: {result.error}")
            iterations_run += 1

            # -- classify and account ----------------------------------------
            outcome = classify(result.raw_exit_code, result.killed_by_idle_monitor)
            state.last_outcome = outcome
            state.last_exit_code = result.raw_exit_code
            state.consecutive_failures = accumulator.record(outcome)
            decision = GateDecision.CONTINUE
            if not audit_name:
                try:
                    work = inspect_work(config.metadata_dir)
                except (OSError, ValueError) as exc:
                    self._warn(f"iteration {state.iteration}: project inspection failed: {exc}")
                else:
                    decision = self.gate.observe(outcome, work)
                state.completion_pending = self.gate.pending
            self.records.append(
                IterationRecord(
                    iteration=state.iteration,
                    log_index=log_index,
                    prompt_name=prompt.name if prompt is not None else "",
                    outcome=outcome.value,
                    raw_exit_code=result.raw_exit_code,
                    consecutive_failures=state.consecutive_failures,
                    gate_decision=decision.value,
                )
            )
            threshold_text = str(accumulator.threshold) if accumulator.threshold else "-"
            self._say(
                f"iteration {state.iteration}: outcome={outcome.value} exit_code={result.raw_exit_code} "
                f"failures={state.consecutive_failures}/{threshold_text} completion={decision.value}"
            )

            # -- decide --------------------------------------------------------
            if decision is GateDecision.COMPLETE:
                state.completed = True
                return self._halt(
                    state, ExitOutcome.PROJECT_COMPLETE, "completion confirmed", iterations_run=iterations_run
                )
            if decision is GateDecision.PENDING:
                self._say("completion pending; running one confirmatory iteration")
            elif decision is GateDecision.RESUMED:
                self._say("open work found; completion pending marker cleared")

            if outcome is ExitOutcome.ABORTED:
                return self._halt(state, ExitOutcome.ABORTED, "agent aborted", iterations_run=iterations_run)
            if accumulator.threshold_reached:
                last_code = result.raw_exit_code or EXIT_GENERAL_ERROR
                return self._halt(
                    state,
                    ExitOutcome.OTHER_FAILURE,
                    f"failure threshold reached after {accumulator.count} consecutive failures",
                    iterations_run=iterations_run,
                    exit_code=last_code,
                )
            if outcome is ExitOutcome.SIGNAL_TERMINATED and not config.continue_on_timeout:
                return self._halt(
                    state, ExitOutcome.SIGNAL_TERMINATED, "agent terminated by timeout or signal", iterations_run=iterations_run
                )
            if outcome is ExitOutcome.RATE_LIMITED:
                wait = rate_limit_wait_seconds(
                    result.rate_limit_hint,
                    now=self._now(),
                    backoff=config.rate_limit_backoff,
                    buffer=config.rate_limit_buffer,
                )
                self._say(f"rate limited; waiting {wait:.0f}s before the next iteration")
                self._sleep(wait)

            if before is not None:
                after = _collect_change_snapshot(config.project_dir)
                if after == before:
                    state.no_change_streak += 1
                    self._warn(
                        f"no changes in iteration {state.iteration} "
                        f"({state.no_change_streak}/{config.max_no_change_iterations} consecutive)"
                    )
                    if state.no_change_streak >= config.max_no_change_iterations:
                        return self._halt(
                            state,
                            ExitOutcome.ABORTED,
                            f"{state.no_change_streak} consecutive iterations without changes",
                            iterations_run=iterations_run,
                        )
                else:
                    state.no_change_streak = 0

            state.iteration += 1


def run_loop(config: RunConfig, adapter: AgentAdapter, **kwargs) -> RunSummary:
    return IterationLoop(config, adapter, **kwargs).run()

