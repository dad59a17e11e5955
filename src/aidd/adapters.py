"""Agent CLI adapters.

An adapter knows how to invoke one agent CLI: the argv for a single
iteration, whether the prompt travels as an argument or over stdin, what the
project needs before the first invocation, and which output lines signal a
provider-side failure.  The adapter is resolved once per run.
"""

from __future__ import annotations

import json
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from aidd.constants import (
    DEFAULT_NUDGE_MESSAGE,
    EXIT_NO_ASSISTANT,
    EXIT_PROVIDER_ERROR,
    EXIT_RATE_LIMITED,
    MARKER_NO_ASSISTANT,
    MARKER_PROVIDER_ERROR,
    MARKER_RATE_LIMIT,
)
from aidd.models import AdapterError, PromptSelection

PROMPT_VIA_ARGUMENT = "argument"
PROMPT_VIA_STDIN = "stdin"

# Prompts that set up or onboard a project use the init model; everything
# else uses the code model.
_INIT_PROMPTS = frozenset({"initializer", "onboarding"})

OPENCODE_CONFIG_FILENAME = "opencode.json"
OPENCODE_PERMISSIVE_CONFIG: dict[str, Any] = {
    "$schema": "https://opencode.ai/config.json",
    "permission": {"*": "allow"},
}


class AgentAdapter(ABC):
    name: str = ""
    executable: str = ""
    prompt_delivery: str = PROMPT_VIA_ARGUMENT

    def __init__(
        self,
        *,
        model: str = "",
        init_model: str = "",
        code_model: str = "",
        nudge_message: str = "",
    ) -> None:
        self.model = model
        self.init_model = init_model
        self.code_model = code_model
        self.nudge_message = nudge_message or DEFAULT_NUDGE_MESSAGE

    @property
    def accepts_nudge(self) -> bool:
        return self.prompt_delivery == PROMPT_VIA_ARGUMENT

    def model_for(self, prompt_name: str) -> str:
        if prompt_name in _INIT_PROMPTS:
            return self.init_model or self.model
        return self.code_model or self.model

    def _model_args(self, prompt_name: str) -> list[str]:
        model = self.model_for(prompt_name)
        return ["--model", model] if model else []

    @abstractmethod
    def build_command(self, prompt: PromptSelection) -> list[str]:
        """Return the argv for one iteration."""

    def stdin_payload(self, prompt: PromptSelection) -> str | None:
        if self.prompt_delivery == PROMPT_VIA_STDIN:
            return prompt.text
        return None

    def prepare(self, project_dir: Path) -> list[str]:
        """Get the project ready for this CLI; returns human-readable notes."""
        return []

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def version(self) -> str:
        if not self.is_available():
            return "unavailable"
        try:
            completed = subprocess.run(
                [self.executable, "--version"],
                text=True,
                capture_output=True,
                check=False,
                timeout=15,
            )
        except (OSError, subprocess.TimeoutExpired):
            return "unknown"
        lines = (completed.stdout or "").strip().splitlines()
        return lines[0].strip() if lines else "unknown"

    def detect_marker(self, line: str) -> int | None:
        """Return the reserved exit code for a failure marker in ``line``."""
        if MARKER_NO_ASSISTANT in line:
            return EXIT_NO_ASSISTANT
        if MARKER_PROVIDER_ERROR in line:
            return EXIT_PROVIDER_ERROR
        if MARKER_RATE_LIMIT in line.lower():
            return EXIT_RATE_LIMITED
        return None


class OpenCodeAdapter(AgentAdapter):
    name = "opencode"
    executable = "opencode"

    def build_command(self, prompt: PromptSelection) -> list[str]:
        return [self.executable, "run", *self._model_args(prompt.name), prompt.text]

    def prepare(self, project_dir: Path) -> list[str]:
        config_path = project_dir / OPENCODE_CONFIG_FILENAME
        if not config_path.exists():
            config_path.write_text(json.dumps(OPENCODE_PERMISSIVE_CONFIG, indent=2) + "\n", encoding="utf-8")
            return [f"created permissive {OPENCODE_CONFIG_FILENAME}"]
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return [f"{OPENCODE_CONFIG_FILENAME} is not valid JSON; left untouched"]
        if not isinstance(payload, dict):
            return [f"{OPENCODE_CONFIG_FILENAME} is not an object; left untouched"]
        permission = payload.get("permission")
        if permission == "allow" or (isinstance(permission, dict) and permission.get("*") == "allow"):
            return []
        payload["permission"] = {"*": "allow"}
        config_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        return [f"updated {OPENCODE_CONFIG_FILENAME} with permissive permissions"]


class KiloCodeAdapter(AgentAdapter):
    name = "kilocode"
    executable = "kilo"

    def build_command(self, prompt: PromptSelection) -> list[str]:
        return [self.executable, "run", *self._model_args(prompt.name), prompt.text]


class ClaudeCodeAdapter(AgentAdapter):
    name = "claude-code"
    executable = "claude"
    prompt_delivery = PROMPT_VIA_STDIN

    def build_command(self, prompt: PromptSelection) -> list[str]:
        return [self.executable, "--print", "--no-session-persistence", *self._model_args(prompt.name)]


ADAPTERS: dict[str, type[AgentAdapter]] = {
    OpenCodeAdapter.name: OpenCodeAdapter,
    KiloCodeAdapter.name: KiloCodeAdapter,
    ClaudeCodeAdapter.name: ClaudeCodeAdapter,
}

_ALIASES = {"claude": "claude-code", "kilo": "kilocode"}


def resolve_adapter(
    name: str,
    *,
    model: str = "",
    init_model: str = "",
    code_model: str = "",
    nudge_message: str = "",
) -> AgentAdapter:
    normalized = str(name).strip().lower()
    normalized = _ALIASES.get(normalized, normalized)
    adapter_cls = ADAPTERS.get(normalized)
    if adapter_cls is None:
        raise AdapterError(
            f"unsupported agent CLI '{name}'; supported: {', '.join(sorted(ADAPTERS))}"
        )
    return adapter_cls(
        model=model,
        init_model=init_model,
        code_model=code_model,
        nudge_message=nudge_message,
    )
