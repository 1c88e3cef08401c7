"""Interactive first-run setup: asks for provider, model and agent templates
and writes them to ``.env`` in the current directory.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from pathlib import Path

import click
from dotenv import dotenv_values
from rich.console import Console

from draftcraft.config import (
    DEFAULT_ANTHROPIC_BASE_URL,
    DEFAULT_HISTORY_MESSAGES,
    DEFAULT_LMSTUDIO_BASE_URL,
    DEFAULT_OLLAMA_BASE_URL,
    DEFAULT_OPENAI_BASE_URL,
    MAX_HISTORY_MESSAGES,
    MIN_HISTORY_MESSAGES,
    DraftConfig,
    default_env_path,
)
from draftcraft.errors import ConfigurationError, DraftCraftError
from draftcraft.executor import ExecutorMode, parse_executor_mode
from draftcraft.llm import PROVIDER_LABELS, LlmProvider

logger = logging.getLogger(__name__)
console = Console()

DEFAULT_MODELS = {
    LlmProvider.OLLAMA: "llama3.1:8b",
    LlmProvider.LMSTUDIO: "qwen2.5-7b-instruct",
    LlmProvider.OPENAI: "gpt-4.1-mini",
    LlmProvider.ANTHROPIC: "claude-3-5-sonnet-latest",
}

MANAGED_KEYS = [
    "LLM_PROVIDER",
    "LLM_MODEL",
    "OLLAMA_BASE_URL",
    "LMSTUDIO_BASE_URL",
    "OPENAI_BASE_URL",
    "OPENAI_API_KEY",
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_API_KEY",
    "EXECUTOR_MODE",
    "CODEX_COMMAND_TEMPLATE",
    "CLAUDE_COMMAND_TEMPLATE",
    "CODEX_WORKDIR",
    "MAX_HISTORY_MESSAGES",
]
SLACK_KEYS = ["SLACK_BOT_TOKEN", "SLACK_APP_TOKEN"]


class SetupCancelled(DraftCraftError):
    """The user declined to save the setup answers."""


def to_env_value(value: str) -> str:
    """Single line, single-quoted when dotenv would otherwise misread it."""
    value = " ".join(value.splitlines()).strip()
    if value and not any(c in value for c in " #'\"\\$"):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def build_env_text(existing: Mapping[str, str | None], values: Mapping[str, str]) -> str:
    """Render ``.env`` with the managed keys first; unknown keys are kept."""
    lines = ["# DraftCraft settings"]
    for key in MANAGED_KEYS:
        lines.append(f"{key}={to_env_value(values.get(key, ''))}")

    lines.append("")
    lines.append("# Slack bot (optional)")
    for key in SLACK_KEYS:
        lines.append(f"{key}={to_env_value(existing.get(key) or '')}")

    rest = sorted(
        (k, v) for k, v in existing.items()
        if k not in MANAGED_KEYS and k not in SLACK_KEYS
    )
    if rest:
        lines.append("")
        lines.append("# Existing custom keys")
        for key, value in rest:
            lines.append(f"{key}={to_env_value(value or '')}")

    return "\n".join(lines) + "\n"


def has_inline_config(environ: Mapping[str, str]) -> bool:
    """True when the environment alone names a model and an agent template."""
    has_model = bool(environ.get("LLM_MODEL") or environ.get("OLLAMA_MODEL"))
    has_template = bool(environ.get("CODEX_COMMAND_TEMPLATE") or environ.get("CLAUDE_COMMAND_TEMPLATE"))
    return has_model and has_template


def _ask_provider(current: LlmProvider) -> LlmProvider:
    console.print("\n[bold]Which model provider should DraftCraft use?[/bold]")
    providers = list(LlmProvider)
    for i, provider in enumerate(providers, start=1):
        console.print(f"  {i}. {PROVIDER_LABELS[provider]}")
    choice = click.prompt(
        "Number",
        type=click.IntRange(1, len(providers)),
        default=providers.index(current) + 1,
    )
    return providers[choice - 1]


def _ask_secret(label: str, current: str) -> str:
    hint = " (leave empty to keep the current value)" if current else ""
    value = click.prompt(f"{label}{hint}", default="", show_default=False, hide_input=True)
    return value.strip() or current


def _history_default(raw: str) -> int:
    if raw.isdigit() and MIN_HISTORY_MESSAGES <= int(raw) <= MAX_HISTORY_MESSAGES:
        return int(raw)
    return DEFAULT_HISTORY_MESSAGES


def run_setup(
    env_path: Path | None = None,
    environ: MutableMapping[str, str] | None = None,
) -> Path:
    """Ask for settings, write ``.env`` and apply the values to ``environ``."""
    env_path = env_path or default_env_path()
    environ = os.environ if environ is None else environ
    existing = dict(dotenv_values(env_path)) if env_path.exists() else {}

    def current(key: str, default: str = "") -> str:
        return existing.get(key) or default

    console.print("\n[bold cyan]=== DraftCraft setup ===[/bold cyan]")

    try:
        current_provider = LlmProvider(current("LLM_PROVIDER", "ollama").lower())
    except ValueError:
        current_provider = LlmProvider.OLLAMA
    provider = _ask_provider(current_provider)

    values = {
        "LLM_PROVIDER": provider.value,
        "LLM_MODEL": click.prompt("Model name", default=current("LLM_MODEL", DEFAULT_MODELS[provider])),
        "OLLAMA_BASE_URL": click.prompt(
            "Ollama base URL", default=current("OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL)
        ),
        "LMSTUDIO_BASE_URL": click.prompt(
            "LM Studio base URL", default=current("LMSTUDIO_BASE_URL", DEFAULT_LMSTUDIO_BASE_URL)
        ),
        "OPENAI_BASE_URL": click.prompt(
            "OpenAI base URL", default=current("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL)
        ),
        "ANTHROPIC_BASE_URL": click.prompt(
            "Anthropic base URL", default=current("ANTHROPIC_BASE_URL", DEFAULT_ANTHROPIC_BASE_URL)
        ),
        "OPENAI_API_KEY": _ask_secret("OPENAI_API_KEY", current("OPENAI_API_KEY")),
        "ANTHROPIC_API_KEY": _ask_secret("ANTHROPIC_API_KEY", current("ANTHROPIC_API_KEY")),
        "EXECUTOR_MODE": click.prompt(
            "Executor mode",
            type=click.Choice([m.value for m in ExecutorMode], case_sensitive=False),
            default=(parse_executor_mode(current("EXECUTOR_MODE")) or ExecutorMode.AUTO).value,
        ).lower(),
        "CODEX_COMMAND_TEMPLATE": click.prompt(
            "CODEX_COMMAND_TEMPLATE", default=current("CODEX_COMMAND_TEMPLATE", "codex")
        ),
        "CLAUDE_COMMAND_TEMPLATE": click.prompt(
            "CLAUDE_COMMAND_TEMPLATE", default=current("CLAUDE_COMMAND_TEMPLATE", "claude")
        ),
        "CODEX_WORKDIR": click.prompt("CODEX_WORKDIR", default=current("CODEX_WORKDIR", os.getcwd())),
        "MAX_HISTORY_MESSAGES": str(click.prompt(
            "MAX_HISTORY_MESSAGES",
            type=click.IntRange(MIN_HISTORY_MESSAGES, MAX_HISTORY_MESSAGES),
            default=_history_default(current("MAX_HISTORY_MESSAGES")),
        )),
    }

    if not click.confirm("Save these settings?", default=True):
        raise SetupCancelled("Setup cancelled.")

    env_path.write_text(build_env_text(existing, values), encoding="utf-8")
    environ.update(values)
    logger.info(f"Wrote {env_path}")
    console.print(f"\n[green]Saved:[/green] {env_path}\n")
    return env_path


def ensure_setup(env_path: Path | None = None) -> bool:
    """Run the wizard when there is no usable configuration. Returns True if it ran."""
    env_path = env_path or default_env_path()

    if not env_path.exists():
        if has_inline_config(os.environ):
            return False
        run_setup(env_path)
        return True

    try:
        DraftConfig.load()
    except ConfigurationError as e:
        console.print(f"\n[yellow]Configuration problem detected, starting setup.[/yellow]\n{e}")
        run_setup(env_path)
        return True
    return False
