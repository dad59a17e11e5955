"""aidd utility functions: time, driver log and git helpers."""

from __future__ import annotations

import subprocess
from datetime import datetime, timezone
from pathlib import Path

from aidd.constants import DRIVER_LOG_RELATIVE


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _append_log(metadata_dir: Path, message: str) -> None:
    log_path = metadata_dir.joinpath(*DRIVER_LOG_RELATIVE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _is_git_worktree(repo_root: Path) -> bool:
    check = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return check.returncode == 0 and check.stdout.strip() == "true"


def _collect_change_snapshot(repo_root: Path) -> tuple[str, str]:
    """Return ``(HEAD sha, porcelain status)`` for no-change detection."""
    head = _run_git(repo_root, ["rev-parse", "HEAD"])
    status = _run_git(repo_root, ["status", "--porcelain", "--untracked-files=all"])
    head_sha = head.stdout.strip() if head.returncode == 0 else ""
    porcelain = status.stdout if status.returncode == 0 else ""
    return (head_sha, porcelain)
