from __future__ import annotations

import io
import shutil
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

import aidd.supervisor as supervisor_module
from aidd.adapters import AgentAdapter, ClaudeCodeAdapter, OpenCodeAdapter
from aidd.models import PromptSelection
from aidd.supervisor import ProcessSupervisor

PROMPT = PromptSelection(name="coding", text="implement the next feature")


class _StepClock:
    """Monotonic clock that moves forward a fixed step on every read."""

    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            self.now += self.step
            return self.now


class _RecordingStdin:
    def __init__(self, clock: "_StepClock | None" = None) -> None:
        self.writes: list[str] = []
        self.times: list[float] = []
        self.closed = False
        self._clock = clock

    def write(self, text: str) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file")
        self.writes.append(text)
        if self._clock is not None:
            self.times.append(self._clock.now)
        return len(text)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class _ScriptedStream:
    """Yields scripted lines, then blocks until the owning process dies."""

    def __init__(self, lines: list[str], process: "_FakeProcess") -> None:
        self._lines = list(lines)
        self._process = process

    def readline(self) -> str:
        if self._lines:
            return self._lines.pop(0)
        while not (self._process.finished or self._process.exit_on_drain or self._process.close_output):
            time.sleep(0.002)
        return ""

    def close(self) -> None:
        return None


class _FakeProcess:
    def __init__(
        self,
        lines: list[str],
        *,
        exit_code: int | None = None,
        close_output: bool = False,
        clock: _StepClock | None = None,
    ) -> None:
        self.stdin = _RecordingStdin(clock)
        self.stdout = _ScriptedStream(lines, self)
        self.pid = 4242
        self.returncode: int | None = None
        self.exit_on_drain = exit_code is not None
        self.close_output = close_output
        self._exit_code = exit_code
        self._clock = clock
        self.signals: list[int] = []
        self.signal_times: list[float] = []
        self.killed = False

    @property
    def finished(self) -> bool:
        return self.returncode is not None

    def poll(self) -> int | None:
        if self.returncode is None and self.exit_on_drain and not self.stdout._lines:
            self.returncode = self._exit_code
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.poll() is None:
            raise subprocess.TimeoutExpired(cmd="fake-agent", timeout=timeout or 0.0)
        return self.returncode

    def send_signal(self, signum: int) -> None:
        self.signals.append(signum)
        if self._clock is not None:
            self.signal_times.append(self._clock.now)
        self.returncode = -signum

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def _install_process(monkeypatch: pytest.MonkeyPatch, process: _FakeProcess) -> list[dict]:
    calls: list[dict] = []

    def _factory(argv, **kwargs):
        calls.append({"argv": list(argv), **kwargs})
        return process

    monkeypatch.setattr(supervisor_module.subprocess, "Popen", _factory)
    monkeypatch.setattr(supervisor_module, "WAIT_SLICE_SECONDS", 0.001)
    monkeypatch.setattr(supervisor_module, "JOIN_TIMEOUT_SECONDS", 1.0)
    return calls


def _supervisor(**kwargs) -> ProcessSupervisor:
    options = {
        "idle_timeout": 900.0,
        "nudge_timeout": 300.0,
        "timeout": 3600.0,
        "terminate_grace": 0.01,
        "echo": io.StringIO(),
    }
    options.update(kwargs)
    return ProcessSupervisor(**options)


class TestIdleSupervision:
    """Silent agent under the default 900s/300s limits, on a simulated clock."""

    def test_silent_agent_is_nudged_once_then_killed(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess(["booting\n"])
        calls = _install_process(monkeypatch, process)
        events: list[str] = []
        supervisor = _supervisor(clock=_StepClock(1.0), log_event=events.append)

        result = supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "iterations" / "001.log", iteration=1)

        assert result.raw_exit_code == 71
        assert result.killed_by_idle_monitor is True
        assert result.nudge_sent is True
        nudges = [text for text in process.stdin.writes if "DRIVER NOTICE" in text]
        assert len(nudges) == 1
        assert nudges[0].startswith("\n---\n\n")
        assert process.signals, "expected SIGINT before kill"
        assert any("idle nudge sent" in event for event in events)
        assert any("idle timeout" in event for event in events)
        assert calls[0]["argv"] == ["opencode", "run", PROMPT.text]
        assert calls[0]["stderr"] == subprocess.STDOUT
        assert calls[0]["env"]["AIDD_PROJECT_DIR"] == str(tmp_path)
        assert supervisor.active_handle is None

    def test_stdin_prompt_adapter_skips_nudge(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        process = _FakeProcess([])
        _install_process(monkeypatch, process)
        events: list[str] = []
        supervisor = _supervisor(clock=_StepClock(1.0), log_event=events.append)

        result = supervisor.run(ClaudeCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 71
        assert process.stdin.writes == [PROMPT.text]
        assert any("idle nudge skipped" in event for event in events)

    def test_wall_clock_timeout_reports_signal_terminated(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess([])
        _install_process(monkeypatch, process)
        supervisor = _supervisor(idle_timeout=10_000.0, nudge_timeout=5_000.0, timeout=120.0, clock=_StepClock(1.0))

        result = supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 124
        assert result.killed_by_idle_monitor is False


class TestProcessExit:
    def test_normal_exit_code_is_reported_and_logged(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess(["working\n", "done\n"], exit_code=3)
        _install_process(monkeypatch, process)
        echo = io.StringIO()
        supervisor = _supervisor(echo=echo)
        log_path = tmp_path / "001.log"

        result = supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, log_path, iteration=4)

        assert result.raw_exit_code == 3
        assert result.killed_by_idle_monitor is False
        assert result.nudge_sent is False
        log_text = log_path.read_text(encoding="utf-8")
        assert "=== aidd iteration 4 | prompt=coding | cli=opencode" in log_text
        assert "<prompt:coding>" in log_text
        assert "working\ndone\n" in log_text
        assert "finished | exit_code=3" in log_text
        assert echo.getvalue() == "working\ndone\n"

    def test_negative_return_code_maps_to_signal_terminated(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess([], exit_code=-15)
        _install_process(monkeypatch, process)

        result = _supervisor().run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 124

    def test_provider_error_marker_terminates_agent(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess(["thinking\n", "Provider returned error: overloaded\n"])
        _install_process(monkeypatch, process)

        result = _supervisor().run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 72
        assert result.detected_marker == "Provider returned error: overloaded"
        assert process.signals

    def test_rate_limit_marker_keeps_hint(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        process = _FakeProcess(["You've hit your limit · resets 4pm (UTC)\n"])
        _install_process(monkeypatch, process)

        result = _supervisor().run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 74
        assert "resets 4pm" in result.rate_limit_hint

    def test_spawn_failure_is_a_general_error(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        def _missing(*_args, **_kwargs):
            raise FileNotFoundError(2, "No such file or directory", "opencode")

        monkeypatch.setattr(supervisor_module.subprocess, "Popen", _missing)
        log_path = tmp_path / "001.log"

        result = _supervisor().run(OpenCodeAdapter(), PROMPT, tmp_path, log_path)

        assert result.raw_exit_code == 1
        assert "failed to start opencode" in result.error
        assert "[aidd] failed to start opencode" in log_path.read_text(encoding="utf-8")


class TestSupervisionEdges:
    def test_closed_output_keeps_idle_monitor_running(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess(["starting\n"], close_output=True)
        _install_process(monkeypatch, process)
        events: list[str] = []
        supervisor = _supervisor(clock=_StepClock(1.0), log_event=events.append)

        result = supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert result.raw_exit_code == 71
        assert result.killed_by_idle_monitor is True
        assert result.nudge_sent is True
        assert any("agent output closed" in event for event in events)
        assert any("idle timeout" in event for event in events)

    def test_nudge_and_kill_follow_default_limits(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        clock = _StepClock(0.5)
        process = _FakeProcess([], clock=clock)
        _install_process(monkeypatch, process)
        supervisor = _supervisor(clock=clock)

        result = supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        started = clock.step
        assert result.raw_exit_code == 71
        assert len(process.stdin.times) == 1
        assert 300.0 <= process.stdin.times[0] - started <= 305.0
        assert process.signals == [signal.SIGINT]
        assert 900.0 <= process.signal_times[0] - started <= 906.0

    def test_operator_interrupt_stops_agent_and_propagates(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        process = _FakeProcess([])
        _install_process(monkeypatch, process)
        reads = {"count": 0}

        def _interrupting_clock() -> float:
            reads["count"] += 1
            if reads["count"] == 6:
                raise KeyboardInterrupt
            return float(reads["count"])

        events: list[str] = []
        supervisor = _supervisor(clock=_interrupting_clock, log_event=events.append)

        with pytest.raises(KeyboardInterrupt):
            supervisor.run(OpenCodeAdapter(), PROMPT, tmp_path, tmp_path / "001.log")

        assert process.signals == [signal.SIGINT]
        assert process.stdin.closed is True
        assert supervisor.active_handle is None
        assert any("interrupted by operator" in event for event in events)


class _ShellAdapter(AgentAdapter):
    name = "sh"
    executable = "sh"

    def __init__(self, script: str) -> None:
        super().__init__()
        self.script = script

    def build_command(self, prompt: PromptSelection) -> list[str]:
        return ["sh", "-c", self.script, "aidd-agent", prompt.text]


requires_sh = pytest.mark.skipif(
    sys.platform == "win32" or shutil.which("sh") is None,
    reason="needs a POSIX shell",
)


@requires_sh
class TestRealProcess:
    def test_short_lived_process_exit_code_and_output(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setattr(supervisor_module, "WAIT_SLICE_SECONDS", 0.05)
        echo = io.StringIO()
        supervisor = ProcessSupervisor(idle_timeout=20.0, nudge_timeout=10.0, timeout=30.0, echo=echo)
        log_path = tmp_path / "001.log"

        result = supervisor.run(_ShellAdapter("echo x; exit 3"), PROMPT, tmp_path, log_path)

        assert result.raw_exit_code == 3
        assert result.killed_by_idle_monitor is False
        assert "x\n" in log_path.read_text(encoding="utf-8")
        assert echo.getvalue() == "x\n"

    def test_silent_process_with_closed_output_is_killed_when_idle(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setattr(supervisor_module, "WAIT_SLICE_SECONDS", 0.05)
        supervisor = ProcessSupervisor(
            idle_timeout=2.0,
            nudge_timeout=1.0,
            timeout=10.0,
            terminate_grace=1.0,
            echo=io.StringIO(),
        )
        began = time.monotonic()

        result = supervisor.run(
            _ShellAdapter("echo hi; exec >/dev/null 2>&1; exec sleep 30"),
            PROMPT,
            tmp_path,
            tmp_path / "001.log",
        )

        assert result.raw_exit_code == 71
        assert result.killed_by_idle_monitor is True
        assert time.monotonic() - began < 8.0
