"""Prompt selection and rendering from the packaged prompt bundle."""

from __future__ import annotations

import importlib.resources as importlib_resources

from aidd.constants import PROMPT_TOKEN_PATTERN
from aidd.gate import is_completion_pending
from aidd.models import ProjectError, PromptSelection, RunConfig
from aidd.project import is_existing_codebase, onboarding_complete

PROMPT_NAMES = (
    "audit",
    "coding",
    "directive",
    "in_progress",
    "initializer",
    "onboarding",
    "todo",
    "validate",
)


def load_prompt_template(name: str) -> str:
    if name not in PROMPT_NAMES:
        raise ProjectError(f"unknown prompt '{name}'")
    resource = importlib_resources.files("aidd").joinpath("prompts", f"{name}.md")
    if not resource.is_file():
        raise ProjectError(f"bundled prompt is unavailable at package://aidd/prompts/{name}.md")
    return resource.read_text(encoding="utf-8")


def render_prompt(template_text: str, context: dict[str, str], *, name: str) -> str:
    def _replace_token(match) -> str:
        token = match.group(1).strip()
        if token not in context:
            raise ProjectError(f"prompt '{name}' uses unknown token '{{{{{token}}}}}'")
        return context[token]

    return PROMPT_TOKEN_PATTERN.sub(_replace_token, template_text)


def choose_prompt_name(config: RunConfig, *, audit_name: str = "") -> str:
    """Pick the prompt for the next iteration from run mode and project state.

    Priority: audit, directive, pending completion (todo review), explicit
    todo/validate/in-progress modes, then coding once onboarding artifacts
    exist, onboarding for an existing codebase, and initializer otherwise.
    """
    if audit_name:
        return "audit"
    if config.directive:
        return "directive"
    if is_completion_pending(config.metadata_dir):
        return "todo"
    if config.todo:
        return "todo"
    if config.validate:
        return "validate"
    if config.in_progress:
        return "in_progress"
    if onboarding_complete(config.metadata_dir):
        return "coding"
    if is_existing_codebase(config.project_dir):
        return "onboarding"
    return "initializer"


def select_prompt(config: RunConfig, *, audit_name: str = "") -> PromptSelection:
    name = choose_prompt_name(config, audit_name=audit_name)
    context = {
        "metadata_dir": config.metadata_dir.name,
        "project_dir": str(config.project_dir),
        "directive": config.directive,
        "audit_name": audit_name,
    }
    text = render_prompt(load_prompt_template(name), context, name=name)
    return PromptSelection(name=name, text=text)
