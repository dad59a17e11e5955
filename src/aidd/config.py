from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml

from aidd.constants import (
    CONFIG_FILENAME,
    DEFAULT_CLI,
    DEFAULT_FAILURE_SCOPE,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_IDLE_TIMEOUT_SECONDS,
    DEFAULT_MAX_NO_CHANGE_ITERATIONS,
    DEFAULT_NUDGE_TIMEOUT_SECONDS,
    DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
    DEFAULT_RATE_LIMIT_BUFFER_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    FAILURE_SCOPES,
    METADATA_DIRNAME,
)
from aidd.models import ConfigError, RunConfig, _coerce_bool
from aidd.monitor import validate_idle_timeouts

# Keys accepted in aidd.yaml, mapped to RunConfig field names.
_FILE_KEYS: dict[str, str] = {
    "cli": "cli",
    "max_iterations": "max_iterations",
    "idle_timeout": "idle_timeout",
    "idle_nudge_timeout": "nudge_timeout",
    "timeout": "timeout",
    "quit_on_abort": "failure_threshold",
    "failure_threshold": "failure_threshold",
    "failure_scope": "failure_scope",
    "continue_on_timeout": "continue_on_timeout",
    "no_clean": "no_clean",
    "rate_limit_backoff": "rate_limit_backoff",
    "rate_limit_buffer": "rate_limit_buffer",
    "max_no_change_iterations": "max_no_change_iterations",
    "nudge_message": "nudge_message",
    "model": "model",
    "init_model": "init_model",
    "code_model": "code_model",
    "stop_when_done": "stop_when_done",
}


def _resolve_metadata_dir(project_dir: Path) -> Path:
    return project_dir / METADATA_DIRNAME


def _load_driver_config(metadata_dir: Path) -> dict[str, Any]:
    """Read ``aidd.yaml`` from the metadata directory; empty when absent."""
    config_path = metadata_dir / CONFIG_FILENAME
    if not config_path.exists():
        return {}
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} is not valid YAML: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return loaded


def _flatten_file_config(raw: Mapping[str, Any], cli_name: str | None) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, field_name in _FILE_KEYS.items():
        if key in raw and raw[key] is not None:
            values[field_name] = raw[key]
    adapters = raw.get("adapters")
    if cli_name and isinstance(adapters, dict):
        adapter_section = adapters.get(cli_name)
        if isinstance(adapter_section, dict):
            for key in ("nudge_message", "model", "init_model", "code_model"):
                if adapter_section.get(key) is not None:
                    values[key] = adapter_section[key]
    return values


def _require_seconds(name: str, value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number of seconds, got {value!r}") from exc
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return parsed


def _require_non_negative_int(name: str, value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < 0:
        raise ConfigError(f"{name} must be >= 0, got {value!r}")
    return parsed


def _optional_path(value: Any, project_dir: Path) -> Path | None:
    if value in (None, ""):
        return None
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = (project_dir / path).resolve()
    return path


def _split_audits(value: Any) -> tuple[str, ...]:
    if value in (None, ""):
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    audits: list[str] = []
    for item in items:
        name = item.strip()
        if name and name not in audits:
            audits.append(name)
    return tuple(audits)


def load_run_config(project_dir: Path, overrides: Mapping[str, Any] | None = None) -> RunConfig:
    """Build a validated RunConfig.

    Precedence is command-line overrides, then ``<metadata>/aidd.yaml``, then
    built-in defaults.  Override values of ``None`` mean "not given".
    """
    project_dir = Path(project_dir).expanduser().resolve()
    if not project_dir.is_dir():
        raise ConfigError(f"project directory does not exist: {project_dir}")
    metadata_dir = _resolve_metadata_dir(project_dir)

    explicit = {key: value for key, value in (overrides or {}).items() if value is not None}
    raw_file = _load_driver_config(metadata_dir)
    cli_name = str(explicit.get("cli") or raw_file.get("cli") or DEFAULT_CLI).strip().lower()
    merged: dict[str, Any] = {
        "cli": DEFAULT_CLI,
        "max_iterations": None,
        "idle_timeout": DEFAULT_IDLE_TIMEOUT_SECONDS,
        "nudge_timeout": DEFAULT_NUDGE_TIMEOUT_SECONDS,
        "timeout": DEFAULT_TIMEOUT_SECONDS,
        "failure_threshold": DEFAULT_FAILURE_THRESHOLD,
        "failure_scope": DEFAULT_FAILURE_SCOPE,
        "continue_on_timeout": False,
        "no_clean": False,
        "rate_limit_backoff": DEFAULT_RATE_LIMIT_BACKOFF_SECONDS,
        "rate_limit_buffer": DEFAULT_RATE_LIMIT_BUFFER_SECONDS,
        "max_no_change_iterations": DEFAULT_MAX_NO_CHANGE_ITERATIONS,
        "nudge_message": "",
        "model": "",
        "init_model": "",
        "code_model": "",
        "stop_when_done": False,
    }
    merged.update(_flatten_file_config(raw_file, cli_name))
    merged.update(explicit)

    idle_timeout = _require_seconds("idle timeout", merged["idle_timeout"])
    nudge_timeout = _require_seconds("idle nudge timeout", merged["nudge_timeout"])
    validate_idle_timeouts(idle_timeout, nudge_timeout)

    max_iterations_raw = merged["max_iterations"]
    max_iterations: int | None = None
    if max_iterations_raw is not None:
        max_iterations = _require_non_negative_int("max iterations", max_iterations_raw)
        if max_iterations == 0:
            raise ConfigError("max iterations must be at least 1 when given")

    failure_scope = str(merged["failure_scope"]).strip().lower()
    if failure_scope not in FAILURE_SCOPES:
        raise ConfigError(
            f"failure scope must be one of {', '.join(FAILURE_SCOPES)}, got {merged['failure_scope']!r}"
        )

    todo = _coerce_bool(merged.get("todo"))
    validate = _coerce_bool(merged.get("validate"))
    in_progress = _coerce_bool(merged.get("in_progress"))
    if sum((todo, validate, in_progress)) > 1:
        raise ConfigError("--todo, --validate and --in-progress are mutually exclusive")
    audits = _split_audits(merged.get("audits"))
    if audits and (todo or validate or in_progress):
        raise ConfigError("--audit cannot be combined with --todo, --validate or --in-progress")

    try:
        rate_limit_buffer = float(merged["rate_limit_buffer"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"rate limit buffer must be a number of seconds, got {merged['rate_limit_buffer']!r}") from exc
    if rate_limit_buffer < 0:
        raise ConfigError(f"rate limit buffer must be >= 0, got {rate_limit_buffer:g}")

    spec_file = _optional_path(merged.get("spec_file"), project_dir)
    if spec_file is not None and not spec_file.is_file():
        raise ConfigError(f"spec file does not exist: {spec_file}")

    return RunConfig(
        project_dir=project_dir,
        metadata_dir=metadata_dir,
        cli=str(merged["cli"]).strip().lower(),
        max_iterations=max_iterations,
        idle_timeout=idle_timeout,
        nudge_timeout=nudge_timeout,
        timeout=_require_seconds("timeout", merged["timeout"]),
        failure_threshold=_require_non_negative_int("quit-on-abort threshold", merged["failure_threshold"]),
        failure_scope=failure_scope,
        continue_on_timeout=_coerce_bool(merged["continue_on_timeout"]),
        no_clean=_coerce_bool(merged["no_clean"]),
        rate_limit_backoff=_require_seconds("rate limit backoff", merged["rate_limit_backoff"]),
        rate_limit_buffer=rate_limit_buffer,
        max_no_change_iterations=_require_non_negative_int(
            "max no-change iterations", merged["max_no_change_iterations"]
        ),
        nudge_message=str(merged["nudge_message"] or ""),
        model=str(merged["model"] or ""),
        init_model=str(merged["init_model"] or ""),
        code_model=str(merged["code_model"] or ""),
        spec_file=spec_file,
        todo=todo,
        validate=validate,
        in_progress=in_progress,
        directive=str(merged.get("directive") or ""),
        audits=audits,
        stop_when_done=_coerce_bool(merged["stop_when_done"]),
        resources_dir=_optional_path(merged.get("resources_dir"), project_dir),
    )
