"""aidd constants: exit codes, defaults, on-disk layout and output markers."""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_INVALID_ARGS = 2
EXIT_NOT_FOUND = 3
EXIT_PERMISSION_DENIED = 4
EXIT_TIMEOUT = 5
EXIT_ABORTED = 6
EXIT_VALIDATION_FAILED = 7
EXIT_CLI_ERROR = 8
EXIT_NO_ASSISTANT = 70
EXIT_IDLE_TIMEOUT = 71
EXIT_PROVIDER_ERROR = 72
EXIT_PROJECT_COMPLETE = 73
EXIT_RATE_LIMITED = 74
EXIT_SIGNAL_TERMINATED = 124

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CLI = "opencode"
DEFAULT_TIMEOUT_SECONDS = 3600.0
DEFAULT_IDLE_TIMEOUT_SECONDS = 900.0
DEFAULT_NUDGE_TIMEOUT_SECONDS = 300.0
DEFAULT_FAILURE_THRESHOLD = 0
DEFAULT_FAILURE_SCOPE = "run"
FAILURE_SCOPES = ("run", "audit")
DEFAULT_RATE_LIMIT_BACKOFF_SECONDS = 300.0
DEFAULT_RATE_LIMIT_BUFFER_SECONDS = 60.0
DEFAULT_MAX_NO_CHANGE_ITERATIONS = 3
DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
SUPERVISOR_WAIT_SLICE_SECONDS = 1.0
READER_JOIN_TIMEOUT_SECONDS = 2.0

# ---------------------------------------------------------------------------
# Project layout
# ---------------------------------------------------------------------------

METADATA_DIRNAME = ".automaker"
ITERATIONS_DIRNAME = "iterations"
FEATURES_DIRNAME = "features"
FEATURE_FILENAME = "feature.json"
TODO_FILENAME = "todo.md"
SPEC_FILENAME = "app_spec.txt"
CHANGELOG_FILENAME = "CHANGELOG.md"
STATUS_FILENAME = "status.md"
CONFIG_FILENAME = "aidd.yaml"
DRIVER_LOG_RELATIVE = ("logs", "driver.log")
COMPLETION_PENDING_MARKER = ".project_completion_pending"
COMPLETED_MARKER = ".project_completed"
STOP_FILENAME = ".stop"
COPYDIRS_FILENAME = "copydirs.txt"
COPYFILES_FILENAME = "copyfiles.txt"

LOG_NAME_PATTERN = re.compile(r"^(\d+)\.log$")
LOG_INDEX_WIDTH = 3

# Directories never copied by resource sync.
SYNC_EXCLUDED_NAMES = frozenset({".git", "node_modules", "__pycache__", ".venv", METADATA_DIRNAME})

# Entries that do not make a directory an existing codebase.
CODEBASE_IGNORED_NAMES = frozenset(
    {".git", METADATA_DIRNAME, ".DS_Store", "node_modules", ".vscode", ".idea", "opencode.json"}
)

# ---------------------------------------------------------------------------
# Agent output markers
# ---------------------------------------------------------------------------

MARKER_NO_ASSISTANT = "The model returned no assistant messages"
MARKER_PROVIDER_ERROR = "Provider returned error"
MARKER_RATE_LIMIT = "hit your limit"

# e.g. "You've hit your limit · resets 3pm (America/Los_Angeles)"
RATE_LIMIT_RESET_PATTERN = re.compile(
    r"resets\s+(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)?"
    r"(?:\s*\((?P<zone>[A-Za-z_]+/[A-Za-z_]+|UTC)\))?",
    re.IGNORECASE,
)

DEFAULT_NUDGE_MESSAGE = (
    "DRIVER NOTICE: no output has been seen from this session for several minutes. "
    "If you are blocked on the same problem after three attempts, record it in the "
    "project notes and move on to the next item. Otherwise reply with a one-line "
    "status update and keep working."
)

PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
