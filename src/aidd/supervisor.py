"""Process supervision for one agent iteration.

One reader thread pumps the merged stdout/stderr of the agent into the
iteration log, the console and an event queue.  The control thread waits on
that queue with a timeout equal to the nearest idle or wall-clock deadline,
so output, idle timers and process exit are handled whichever comes first.
"""

from __future__ import annotations

import os
import queue
import shlex
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, TextIO

from aidd.adapters import AgentAdapter
from aidd.constants import (
    DEFAULT_TERMINATE_GRACE_SECONDS,
    EXIT_GENERAL_ERROR,
    EXIT_IDLE_TIMEOUT,
    EXIT_RATE_LIMITED,
    EXIT_SIGNAL_TERMINATED,
    READER_JOIN_TIMEOUT_SECONDS,
    SUPERVISOR_WAIT_SLICE_SECONDS,
)
from aidd.models import ProcessHandle, PromptSelection, SupervisedRun
from aidd.monitor import IdleAction, IdleMonitor
from aidd.utils import _compact_log_text, _utc_now

WAIT_SLICE_SECONDS = SUPERVISOR_WAIT_SLICE_SECONDS
JOIN_TIMEOUT_SECONDS = READER_JOIN_TIMEOUT_SECONDS

_EVENT_LINE = "line"
_EVENT_EOF = "eof"


def _noop(message: str) -> None:
    return None


def _format_command(argv: list[str], prompt: PromptSelection) -> str:
    shown = [f"<prompt:{prompt.name}>" if token == prompt.text else token for token in argv]
    return shlex.join(shown)


class ProcessSupervisor:
    """Run agent commands one at a time under idle and wall-clock limits."""

    def __init__(
        self,
        *,
        idle_timeout: float,
        nudge_timeout: float,
        timeout: float,
        terminate_grace: float = DEFAULT_TERMINATE_GRACE_SECONDS,
        echo: TextIO | None = None,
        log_event: Callable[[str], None] = _noop,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self.nudge_timeout = nudge_timeout
        self.timeout = timeout
        self.terminate_grace = terminate_grace
        self._echo = echo
        self._log_event = log_event
        self._clock = clock
        self.active_handle: ProcessHandle | None = None

    @property
    def echo(self) -> TextIO:
        return self._echo if self._echo is not None else sys.stdout

    # ------------------------------------------------------------------
    # public entry point
    # ------------------------------------------------------------------

    def run(
        self,
        adapter: AgentAdapter,
        prompt: PromptSelection,
        working_directory: Path,
        log_path: Path,
        *,
        iteration: int = 0,
    ) -> SupervisedRun:
        if self.active_handle is not None:
            raise RuntimeError(f"agent process {self.active_handle.pid} is still being supervised")

        log_path.parent.mkdir(parents=True, exist_ok=True)
        started = self._clock()
        argv = adapter.build_command(prompt)
        write_lock = threading.Lock()

        with log_path.open("w", encoding="utf-8") as log_handle:

            def _log_write(text: str) -> None:
                with write_lock:
                    log_handle.write(text)
                    log_handle.flush()

            _log_write(
                f"=== aidd iteration {iteration} | prompt={prompt.name} | cli={adapter.name} | started={_utc_now()} ===\n"
                f"command: {_format_command(argv, prompt)}\n\n"
            )
            result = self._supervise(
                adapter,
                prompt,
                argv,
                working_directory,
                log_path,
                started=started,
                log_write=_log_write,
            )
            _log_write(
                f"\n=== aidd iteration {iteration} finished | exit_code={result.raw_exit_code} "
                f"| idle_killed={str(result.killed_by_idle_monitor).lower()} "
                f"| duration={result.duration_seconds:.1f}s ===\n"
            )
        return result

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _spawn(self, argv: list[str], working_directory: Path, log_path: Path) -> subprocess.Popen[str]:
        env = os.environ.copy()
        env["AIDD_PROJECT_DIR"] = str(working_directory)
        env["AIDD_ITERATION_LOG"] = str(log_path)
        return subprocess.Popen(
            argv,
            cwd=working_directory,
            shell=False,
            text=True,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=1,
            env=env,
        )

    def _supervise(
        self,
        adapter: AgentAdapter,
        prompt: PromptSelection,
        argv: list[str],
        working_directory: Path,
        log_path: Path,
        *,
        started: float,
        log_write: Callable[[str], None],
    ) -> SupervisedRun:
        try:
            process = self._spawn(argv, working_directory, log_path)
        except OSError as exc:
            message = f"failed to start {argv[0]}: {exc}"
            log_write(f"[aidd] {message}\n")
            self._log_event(f"agent spawn error cli={adapter.name}: {exc}")
            return SupervisedRun(
                raw_exit_code=EXIT_GENERAL_ERROR,
                killed_by_idle_monitor=False,
                nudge_sent=False,
                log_path=log_path,
                duration_seconds=self._clock() - started,
                error=message,
            )

        self.active_handle = ProcessHandle(
            pid=process.pid,
            stdin=process.stdin,
            stdout=process.stdout,
            started_at=started,
            log_path=log_path,
        )
        self._log_event(f"agent start cli={adapter.name} pid={process.pid} prompt={prompt.name} log={log_path}")
        events: queue.Queue[tuple[str, Any]] = queue.Queue()
        echo = self.echo

        def _pump_stream(stream: Any) -> None:
            if stream is None:
                events.put((_EVENT_EOF, None))
                return
            try:
                for line in iter(stream.readline, ""):
                    log_write(line)
                    try:
                        echo.write(line)
                        echo.flush()
                    except (OSError, ValueError):
                        pass
                    events.put((_EVENT_LINE, line))
            except (OSError, ValueError):
                pass
            finally:
                events.put((_EVENT_EOF, None))
                try:
                    stream.close()
                except Exception:
                    pass

        reader = threading.Thread(target=_pump_stream, args=(process.stdout,), daemon=True)
        reader.start()

        error = ""
        payload = adapter.stdin_payload(prompt)
        if payload is not None:
            error = self._deliver_stdin_prompt(process, payload)

        monitor = IdleMonitor(self.idle_timeout, self.nudge_timeout, clock=self._clock)
        deadline = started + self.timeout
        killed_by_idle = False
        timed_out = False
        forced_code: int | None = None
        detected_marker = ""
        rate_limit_hint = ""
        terminated = False
        output_closed = False

        try:
            while True:
                now = self._clock()
                wait = min(monitor.seconds_until_deadline(), deadline - now, WAIT_SLICE_SECONDS)
                try:
                    kind, line = events.get(timeout=max(0.0, wait))
                except queue.Empty:
                    kind, line = "", None

                if kind == _EVENT_EOF:
                    # Output closing ends nothing; only process exit does.
                    if not output_closed:
                        output_closed = True
                        self._log_event(f"agent output closed pid={process.pid}")
                    continue
                if kind == _EVENT_LINE:
                    monitor.record_activity()
                    marker_code = adapter.detect_marker(line)
                    if marker_code is not None:
                        forced_code = marker_code
                        detected_marker = line.strip()
                        if marker_code == EXIT_RATE_LIMITED:
                            rate_limit_hint = line.strip()
                        self._log_event(
                            f"agent output marker exit_code={marker_code} line={_compact_log_text(detected_marker, 200)}"
                        )
                        self._terminate(process)
                        terminated = True
                        break
                    continue

                if process.poll() is not None:
                    break

                action = monitor.check()
                if action is IdleAction.NUDGE:
                    self._send_nudge(process, adapter)
                elif action is IdleAction.EXPIRE:
                    killed_by_idle = True
                    self._log_event(
                        f"agent idle timeout pid={process.pid} idle_timeout_seconds={self.idle_timeout:g}"
                    )
                    self._terminate(process)
                    terminated = True
                    break

                if self._clock() >= deadline:
                    timed_out = True
                    self._log_event(f"agent timeout pid={process.pid} timeout_seconds={self.timeout:g}")
                    self._terminate(process)
                    terminated = True
                    break

            if terminated:
                returncode = process.returncode
            else:
                returncode = self._wait(process, self.terminate_grace)
        except KeyboardInterrupt:
            self._log_event(f"agent interrupted by operator pid={process.pid}")
            self._terminate(process)
            raise
        finally:
            self._close_stdin(process)
            reader.join(timeout=JOIN_TIMEOUT_SECONDS)
            self.active_handle = None

        # Lines that arrived after the exit was noticed still count for markers.
        while forced_code is None:
            try:
                kind, line = events.get_nowait()
            except queue.Empty:
                break
            if kind != _EVENT_LINE:
                continue
            marker_code = adapter.detect_marker(line)
            if marker_code is not None:
                forced_code = marker_code
                detected_marker = line.strip()
                if marker_code == EXIT_RATE_LIMITED:
                    rate_limit_hint = line.strip()

        if killed_by_idle:
            raw_exit_code = EXIT_IDLE_TIMEOUT
        elif forced_code is not None:
            raw_exit_code = forced_code
        elif timed_out:
            raw_exit_code = EXIT_SIGNAL_TERMINATED
        elif returncode is None:
            raw_exit_code = EXIT_GENERAL_ERROR
        elif returncode < 0:
            raw_exit_code = EXIT_SIGNAL_TERMINATED
        else:
            raw_exit_code = returncode

        duration = self._clock() - started
        self._log_event(
            f"agent finish pid={process.pid} returncode={returncode} exit_code={raw_exit_code} "
            f"duration_seconds={duration:.1f}"
        )
        return SupervisedRun(
            raw_exit_code=raw_exit_code,
            killed_by_idle_monitor=killed_by_idle,
            nudge_sent=monitor.tracker.nudge_sent,
            log_path=log_path,
            duration_seconds=duration,
            detected_marker=detected_marker,
            rate_limit_hint=rate_limit_hint,
            error=error,
        )

    def _deliver_stdin_prompt(self, process: subprocess.Popen[str], payload: str) -> str:
        if process.stdin is None:
            return "agent stdin is unavailable"
        try:
            process.stdin.write(payload)
            process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            self._log_event(f"agent prompt delivery failed pid={process.pid}: {exc}")
            return f"prompt delivery failed: {exc}"
        finally:
            self._close_stdin(process)
        return ""

    def _send_nudge(self, process: subprocess.Popen[str], adapter: AgentAdapter) -> None:
        if not adapter.accepts_nudge:
            self._log_event(
                f"agent idle nudge skipped pid={process.pid}: {adapter.name} receives its prompt on stdin"
            )
            return
        stdin = process.stdin
        if stdin is None or stdin.closed:
            self._log_event(f"agent idle nudge skipped pid={process.pid}: stdin is closed")
            return
        try:
            stdin.write(f"\n---\n\n{adapter.nudge_message}\n\n---\n\n")
            stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            self._log_event(f"agent idle nudge failed pid={process.pid}: {exc}")
            return
        self._log_event(
            f"agent idle nudge sent pid={process.pid} nudge_timeout_seconds={self.nudge_timeout:g}"
        )

    def _wait(self, process: subprocess.Popen[str], limit: float) -> int | None:
        try:
            return process.wait(timeout=limit)
        except subprocess.TimeoutExpired:
            # Reported exit but not reaped in time; treat it like a stuck exit.
            self._terminate(process)
            return process.returncode

    def _terminate(self, process: subprocess.Popen[str]) -> int | None:
        """SIGINT first, then kill after the grace period."""
        if process.poll() is not None:
            return process.returncode
        try:
            process.send_signal(signal.SIGINT)
        except (ProcessLookupError, OSError):
            pass
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=self.terminate_grace)
            except subprocess.TimeoutExpired:
                self._log_event(f"agent pid={process.pid} did not exit after kill")
        return process.returncode

    @staticmethod
    def _close_stdin(process: subprocess.Popen[str]) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            if not stdin.closed:
                stdin.close()
        except (BrokenPipeError, OSError, ValueError):
            pass
