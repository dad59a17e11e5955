"""Resource sync: shared directories, shared files and metadata templates."""

from __future__ import annotations

import importlib.resources as importlib_resources
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from aidd.constants import COPYDIRS_FILENAME, COPYFILES_FILENAME, SYNC_EXCLUDED_NAMES

SYNC_EXCLUDED_FILES = frozenset(
    {"bun.lock", "bun.lockb", "package-lock.json", "yarn.lock", "pnpm-lock.yaml"}
)


@dataclass
class SyncReport:
    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return f"copied={len(self.copied)} skipped={len(self.skipped)} failed={len(self.failed)}"


def _read_list_file(path: Path, report: SyncReport) -> list[str]:
    if not path.is_file():
        return []
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        report.failed.append(f"{path.name}: unreadable ({exc})")
        return []
    entries: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        entries.append(line)
    return entries


def _resolve_source(entry: str, base_dir: Path) -> Path:
    source = Path(os.path.expanduser(entry))
    if not source.is_absolute():
        source = base_dir / source
    return source


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


def _ignore_for_sync(directory: str, names: list[str]) -> set[str]:
    ignored: set[str] = set()
    for name in names:
        if name in SYNC_EXCLUDED_NAMES or name in SYNC_EXCLUDED_FILES:
            ignored.add(name)
        elif os.path.islink(os.path.join(directory, name)):
            ignored.add(name)
    return ignored


def copy_shared_directories(project_dir: Path, resources_dir: Path, report: SyncReport | None = None) -> SyncReport:
    """Mirror each directory listed in ``copydirs.txt`` into the project root."""
    report = report or SyncReport()
    for entry in _read_list_file(resources_dir / COPYDIRS_FILENAME, report):
        source = _resolve_source(entry, resources_dir)
        if not source.is_dir():
            report.skipped.append(f"{entry} (not a directory)")
            continue
        target = project_dir / source.name
        if not _is_within(target, project_dir) or _is_within(project_dir, source):
            report.skipped.append(f"{entry} (unsafe target)")
            continue
        try:
            if target.exists():
                shutil.rmtree(target)
            shutil.copytree(source, target, ignore=_ignore_for_sync)
        except OSError as exc:
            report.failed.append(f"{entry}: {exc}")
            continue
        report.copied.append(str(target.relative_to(project_dir)))
    return report


def copy_shared_files(project_dir: Path, resources_dir: Path, report: SyncReport | None = None) -> SyncReport:
    """Copy files listed in ``copyfiles.txt``; ``src -> dest`` sets the project-relative target."""
    report = report or SyncReport()
    for entry in _read_list_file(resources_dir / COPYFILES_FILENAME, report):
        if " -> " in entry:
            source_text, target_text = (part.strip() for part in entry.split(" -> ", 1))
        else:
            source_text, target_text = entry, ""
        source = _resolve_source(source_text, resources_dir)
        if not source.is_file():
            report.skipped.append(f"{source_text} (not a file)")
            continue
        target = project_dir / (target_text or source.name)
        if not _is_within(target, project_dir):
            report.skipped.append(f"{entry} (target escapes project)")
            continue
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        except OSError as exc:
            report.failed.append(f"{entry}: {exc}")
            continue
        report.copied.append(str(target.relative_to(project_dir)))
    return report


def copy_templates(metadata_dir: Path, report: SyncReport | None = None) -> SyncReport:
    """Copy packaged templates into the metadata directory without overwriting."""
    report = report or SyncReport()
    templates = importlib_resources.files("aidd").joinpath("templates")
    metadata_dir.mkdir(parents=True, exist_ok=True)
    for resource in sorted(templates.iterdir(), key=lambda item: item.name):
        if not resource.is_file() or resource.name.startswith("."):
            continue
        target = metadata_dir / resource.name
        if target.exists():
            report.skipped.append(f"{resource.name} (exists)")
            continue
        target.write_text(resource.read_text(encoding="utf-8"), encoding="utf-8")
        report.copied.append(resource.name)
    return report


def sync_resources(project_dir: Path, resources_dir: Path | None) -> SyncReport:
    report = SyncReport()
    if resources_dir is None or not resources_dir.is_dir():
        return report
    copy_shared_directories(project_dir, resources_dir, report)
    copy_shared_files(project_dir, resources_dir, report)
    return report
