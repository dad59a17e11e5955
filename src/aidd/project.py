"""Project inspection: onboarding artifacts, features, todo list and status."""

from __future__ import annotations

import importlib.resources as importlib_resources
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from aidd.constants import (
    CHANGELOG_FILENAME,
    CODEBASE_IGNORED_NAMES,
    FEATURE_FILENAME,
    FEATURES_DIRNAME,
    SPEC_FILENAME,
    STATUS_FILENAME,
    TODO_FILENAME,
)
from aidd.gate import completion_state
from aidd.models import WorkStatus
from aidd.utils import _utc_now

_TODO_ITEM = re.compile(r"^[^#\s]")
_UNCHECKED_BOX = re.compile(r"^\s*[-*]\s+\[ \]")
_CHECKED_BOX = re.compile(r"^\s*[-*]\s+\[[xX]\]")


@dataclass(frozen=True)
class FeatureRecord:
    path: Path
    payload: dict[str, Any] | None
    error: str = ""

    @property
    def feature_id(self) -> str:
        if self.payload and isinstance(self.payload.get("id"), str):
            return self.payload["id"]
        return self.path.parent.name


def is_existing_codebase(project_dir: Path) -> bool:
    if not project_dir.is_dir():
        return False
    return any(entry.name not in CODEBASE_IGNORED_NAMES for entry in project_dir.iterdir())


def iter_feature_files(metadata_dir: Path) -> list[Path]:
    features_dir = metadata_dir / FEATURES_DIRNAME
    if not features_dir.is_dir():
        return []
    return sorted(path for path in features_dir.glob(f"*/{FEATURE_FILENAME}") if path.is_file())


def load_features(metadata_dir: Path) -> list[FeatureRecord]:
    records: list[FeatureRecord] = []
    for path in iter_feature_files(metadata_dir):
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            records.append(FeatureRecord(path=path, payload=None, error=f"unreadable JSON: {exc}"))
            continue
        if not isinstance(payload, dict):
            records.append(FeatureRecord(path=path, payload=None, error="feature file must contain an object"))
            continue
        records.append(FeatureRecord(path=path, payload=payload))
    return records


def onboarding_complete(metadata_dir: Path) -> bool:
    """Features, spec and changelog all exist once a project has been onboarded."""
    if not iter_feature_files(metadata_dir):
        return False
    if not (metadata_dir / SPEC_FILENAME).is_file():
        return False
    return (metadata_dir / CHANGELOG_FILENAME).is_file()


def count_open_todos(metadata_dir: Path) -> int:
    todo_path = metadata_dir / TODO_FILENAME
    if not todo_path.is_file():
        return 0
    count = 0
    for line in todo_path.read_text(encoding="utf-8", errors="replace").splitlines():
        if _CHECKED_BOX.match(line):
            continue
        if _UNCHECKED_BOX.match(line) or _TODO_ITEM.match(line):
            count += 1
    return count


def count_in_progress_features(metadata_dir: Path) -> int:
    return sum(
        1
        for record in load_features(metadata_dir)
        if record.payload is not None and record.payload.get("status") == "in_progress"
    )


def inspect_work(metadata_dir: Path) -> WorkStatus:
    """Report remaining work.

    A project without any feature files has not been planned yet, which
    counts as open work.  Features with ``"passes": false``, unreadable
    feature files and non-heading lines in ``todo.md`` are open items.
    Features without a ``passes`` flag are neither open nor passing.
    """
    records = load_features(metadata_dir)
    open_todos = count_open_todos(metadata_dir)
    if not records:
        return WorkStatus(has_open_work=True, open_todos=open_todos)
    open_features = 0
    passing = 0
    for record in records:
        if record.payload is None:
            open_features += 1
            continue
        passes = record.payload.get("passes")
        if passes is False:
            open_features += 1
        elif passes is True:
            passing += 1
    return WorkStatus(
        has_open_work=open_features > 0 or open_todos > 0,
        open_features=open_features,
        passing_features=passing,
        open_todos=open_todos,
    )


# ---------------------------------------------------------------------------
# Feature schema checks
# ---------------------------------------------------------------------------


def _load_feature_schema() -> dict[str, Any]:
    resource = importlib_resources.files("aidd").joinpath("schemas", "feature.schema.json")
    return json.loads(resource.read_text(encoding="utf-8"))


def _format_error_path(error_path: Iterable[Any]) -> str:
    pieces = ["$"]
    for part in error_path:
        if isinstance(part, int):
            pieces.append(f"[{part}]")
        else:
            pieces.append(f".{part}")
    return "".join(pieces)


def validate_features(metadata_dir: Path) -> tuple[int, list[str]]:
    """Validate every feature file; returns ``(files checked, failures)``."""
    records = load_features(metadata_dir)
    validator = Draft202012Validator(_load_feature_schema())
    known_ids = {record.feature_id for record in records if record.payload is not None}
    failures: list[str] = []
    for record in records:
        if record.payload is None:
            failures.append(f"{record.path}: {record.error}")
            continue
        for error in sorted(validator.iter_errors(record.payload), key=lambda item: _format_error_path(item.path)):
            failures.append(f"{record.path} schema violation at {_format_error_path(error.path)}: {error.message}")
        dependencies = record.payload.get("dependencies")
        if isinstance(dependencies, list):
            for dependency in dependencies:
                if isinstance(dependency, str) and dependency not in known_ids:
                    failures.append(f"{record.path}: unknown dependency '{dependency}'")
    return (len(records), failures)


# ---------------------------------------------------------------------------
# Status report
# ---------------------------------------------------------------------------


def render_status(project_dir: Path, metadata_dir: Path) -> dict[str, Any]:
    work = inspect_work(metadata_dir)
    status_counts: dict[str, int] = {}
    for record in load_features(metadata_dir):
        status = "invalid"
        if record.payload is not None:
            status = str(record.payload.get("status") or "none")
        status_counts[status] = status_counts.get(status, 0) + 1
    return {
        "generated_at": _utc_now(),
        "project_dir": str(project_dir),
        "metadata_dir": str(metadata_dir),
        "existing_codebase": is_existing_codebase(project_dir),
        "onboarding_complete": onboarding_complete(metadata_dir),
        "features_total": len(iter_feature_files(metadata_dir)),
        "features_passing": work.passing_features,
        "features_open": work.open_features,
        "feature_statuses": dict(sorted(status_counts.items())),
        "open_todos": work.open_todos,
        "has_open_work": work.has_open_work,
        "completion": completion_state(metadata_dir),
    }


def format_status_markdown(status: dict[str, Any]) -> str:
    lines = [
        "# Project status",
        "",
        f"- generated: {status['generated_at']}",
        f"- project: {status['project_dir']}",
        f"- onboarding complete: {'yes' if status['onboarding_complete'] else 'no'}",
        f"- features: {status['features_passing']}/{status['features_total']} passing",
        f"- open todo items: {status['open_todos']}",
        f"- completion: {status['completion']}",
    ]
    if status["feature_statuses"]:
        lines.append("")
        lines.append("## Feature statuses")
        lines.append("")
        for name, count in status["feature_statuses"].items():
            lines.append(f"- {name}: {count}")
    return "\n".join(lines) + "\n"


def write_status(project_dir: Path, metadata_dir: Path) -> Path:
    status_path = metadata_dir / STATUS_FILENAME
    status_path.parent.mkdir(parents=True, exist_ok=True)
    status_path.write_text(format_status_markdown(render_status(project_dir, metadata_dir)), encoding="utf-8")
    return status_path
