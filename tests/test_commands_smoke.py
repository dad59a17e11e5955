from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

import aidd.adapters as adapters_module
import aidd.commands as commands_module
from aidd.models import RunSummary
from aidd.outcomes import ExitOutcome


def _load_toml(path: Path) -> dict:
    if sys.version_info >= (3, 11):
        import tomllib

        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    else:  # pragma: no cover
        tomli = pytest.importorskip("tomli")
        payload = tomli.loads(path.read_text(encoding="utf-8"))
    return payload


def _write_feature(project_dir: Path, feature_id: str, payload: dict) -> None:
    feature_dir = project_dir / ".automaker" / "features" / feature_id
    feature_dir.mkdir(parents=True, exist_ok=True)
    (feature_dir / "feature.json").write_text(json.dumps(payload), encoding="utf-8")


def test_stop_status_and_check_features_smoke(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_dir = tmp_path / "project"
    project_dir.mkdir()

    assert commands_module.main(["stop", "--project-dir", str(project_dir), "--reason", "lunch"]) == 0
    assert (project_dir / ".automaker" / ".stop").exists()

    assert commands_module.main(["check-features", "--project-dir", str(project_dir)]) == 3

    _write_feature(project_dir, "login", {"id": "login", "category": "auth", "description": "Login", "passes": True})
    assert commands_module.main(["check-features", "--project-dir", str(project_dir)]) == 0

    _write_feature(project_dir, "broken", {"id": "broken", "category": "auth", "status": "nope"})
    assert commands_module.main(["check-features", "--project-dir", str(project_dir)]) == 7

    capsys.readouterr()
    assert commands_module.main(["status", "--project-dir", str(project_dir), "--json"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["features_total"] == 2
    assert status["features_passing"] == 1
    assert status["completion"] == "open"

    assert commands_module.main(["status", "--project-dir", str(project_dir)]) == 0
    assert "# Project status" in capsys.readouterr().out


def test_status_and_check_features_survive_undecodable_feature(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    project_dir = tmp_path / "project"
    feature_dir = project_dir / ".automaker" / "features" / "menu"
    feature_dir.mkdir(parents=True)
    (feature_dir / "feature.json").write_bytes(b'{"id": "menu", "category": "ui", "description": "caf\xe9"}')

    assert commands_module.main(["check-features", "--project-dir", str(project_dir)]) == 7
    assert "unreadable JSON" in capsys.readouterr().out

    assert commands_module.main(["status", "--project-dir", str(project_dir), "--json"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["features_open"] == 1
    assert status["has_open_work"] is True


def test_run_help_states_timeout_halt(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        commands_module.main(["run", "--help"])
    assert excinfo.value.code == 0
    help_text = " ".join(capsys.readouterr().out.split())
    assert "--continue-on-timeout" in help_text
    assert "halts on the first such iteration (exit 124)" in help_text


def test_missing_project_dir(tmp_path: Path) -> None:
    missing = str(tmp_path / "missing")
    assert commands_module.main(["stop", "--project-dir", missing]) == 3
    assert commands_module.main(["status", "--project-dir", missing]) == 3
    assert commands_module.main(["clean-logs", "--project-dir", missing]) == 3
    assert commands_module.main(["run", "--project-dir", missing]) == 2


def test_clean_logs_command(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    iterations_dir = tmp_path / ".automaker" / "iterations"
    iterations_dir.mkdir(parents=True)
    (iterations_dir / "001.log").write_text("\x1b[31mred\x1b[0m\n", encoding="utf-8")

    assert commands_module.main(["clean-logs", "--project-dir", str(tmp_path)]) == 0
    assert (iterations_dir / "001.log").read_text(encoding="utf-8") == "red\n"
    assert "cleaned 1 log file(s)" in capsys.readouterr().out


def test_run_rejects_bad_timeouts(tmp_path: Path) -> None:
    argv = ["run", "--project-dir", str(tmp_path), "--idle-timeout", "60", "--idle-nudge-timeout", "120"]
    assert commands_module.main(argv) == 2


def test_run_rejects_conflicting_modes(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        commands_module.main(["run", "--project-dir", str(tmp_path), "--todo", "--validate"])
    assert excinfo.value.code == 2


def test_run_reports_missing_agent_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(adapters_module.shutil, "which", lambda _name: None)
    assert commands_module.main(["run", "--project-dir", str(tmp_path), "--cli", "claude-code"]) == 8


def test_run_returns_loop_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict = {}

    class _FakeLoop:
        def __init__(self, config, adapter) -> None:
            seen["config"] = config
            seen["adapter"] = adapter

        def run(self) -> RunSummary:
            return RunSummary(outcome=ExitOutcome.PROJECT_COMPLETE, exit_code=73, iterations_run=2)

    monkeypatch.setattr(adapters_module.shutil, "which", lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(adapters_module.AgentAdapter, "version", lambda self: "test-1.0")
    monkeypatch.setattr(commands_module, "IterationLoop", _FakeLoop)

    argv = [
        "run",
        "--project-dir",
        str(tmp_path),
        "--cli",
        "kilocode",
        "--quit-on-abort",
        "3",
        "--audit",
        "security,tests",
        "--failure-scope",
        "audit",
    ]
    assert commands_module.main(argv) == 73
    assert seen["adapter"].name == "kilocode"
    assert seen["config"].failure_threshold == 3
    assert seen["config"].audits == ("security", "tests")
    assert seen["config"].failure_scope == "audit"
    assert seen["config"].continue_on_timeout is False


def test_no_subcommand_prints_help() -> None:
    assert commands_module.main([]) == 2


def test_pyproject_includes_packaged_resources() -> None:
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    pyproject = _load_toml(pyproject_path)

    package_data = (
        pyproject.get("tool", {})
        .get("setuptools", {})
        .get("package-data", {})
        .get("aidd", [])
    )
    assert isinstance(package_data, list)
    assert "prompts/*.md" in package_data
    assert "schemas/*.json" in package_data
    assert "templates/*" in package_data
    assert pyproject["project"]["scripts"]["aidd"] == "aidd.commands:main"
