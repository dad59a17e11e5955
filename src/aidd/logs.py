"""Iteration log numbering and cleanup."""

from __future__ import annotations

import re
from pathlib import Path

from aidd.constants import LOG_INDEX_WIDTH, LOG_NAME_PATTERN

_ANSI_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_ANSI_OTHER = re.compile(r"\x1b[()][0-9A-Za-z]|\x1b[=>]|\x1b[@-Z\\-_]")
_BOX_ONLY_LINE = re.compile(r"^\s*[┌│└┘├┤┬┴┼─╭╮╰╯═║]+[\s┌│└┘├┤┬┴┼─╭╮╰╯═║]*$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def next_log_index(iterations_dir: Path) -> int:
    """One past the highest numeric ``NNN.log`` in the directory, or 1."""
    highest = 0
    if iterations_dir.is_dir():
        for entry in iterations_dir.iterdir():
            match = LOG_NAME_PATTERN.match(entry.name)
            if match and entry.is_file():
                highest = max(highest, int(match.group(1)))
    return highest + 1


def iteration_log_path(iterations_dir: Path, index: int) -> Path:
    return iterations_dir / f"{index:0{LOG_INDEX_WIDTH}d}.log"


def clean_log_text(text: str) -> str:
    text = _ANSI_OSC.sub("", text)
    text = _ANSI_CSI.sub("", text)
    text = _ANSI_OTHER.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    cleaned: list[str] = []
    previous = None
    raw_lines = text.split("\n")
    if raw_lines and raw_lines[-1] == "":
        raw_lines.pop()
    for raw_line in raw_lines:
        line = raw_line.rstrip()
        if _BOX_ONLY_LINE.match(line):
            continue
        if line == previous:
            continue
        cleaned.append(line)
        previous = line
    return "\n".join(cleaned) + ("\n" if cleaned else "")


def clean_iteration_logs(iterations_dir: Path) -> int:
    """Rewrite every ``*.log`` in place without terminal noise; returns files changed."""
    if not iterations_dir.is_dir():
        return 0
    changed = 0
    for path in sorted(iterations_dir.glob("*.log")):
        if not path.is_file():
            continue
        original = path.read_text(encoding="utf-8", errors="replace")
        cleaned = clean_log_text(original)
        if cleaned != original:
            path.write_text(cleaned, encoding="utf-8")
            changed += 1
    return changed
