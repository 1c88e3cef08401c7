"""DraftCraft configuration management.

Values come from the process environment, with ``.env`` in the current
directory loaded first (real environment variables always win).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from draftcraft.errors import ConfigurationError
from draftcraft.executor import ExecutorMode
from draftcraft.llm import LlmProvider

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
DEFAULT_LMSTUDIO_BASE_URL = "http://127.0.0.1:1234/v1"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"

MIN_HISTORY_MESSAGES = 10
MAX_HISTORY_MESSAGES = 200
DEFAULT_HISTORY_MESSAGES = 30


def default_env_path() -> Path:
    return Path.cwd() / ".env"


@dataclass
class LlmConfig:
    """Chat provider settings."""

    provider: LlmProvider = LlmProvider.OLLAMA
    model: str = ""
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    lmstudio_base_url: str = DEFAULT_LMSTUDIO_BASE_URL
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_api_key: str | None = None
    anthropic_base_url: str = DEFAULT_ANTHROPIC_BASE_URL
    anthropic_api_key: str | None = None
    timeout_seconds: float | None = None  # None = wait indefinitely


@dataclass
class ExecutorConfig:
    """Agent launch templates and run policy."""

    mode: ExecutorMode = ExecutorMode.CODEX
    codex_command_template: str | None = None
    claude_command_template: str | None = None
    workdir: str = field(default_factory=os.getcwd)
    run_timeout_seconds: float | None = None  # None = no run timeout


@dataclass
class SlackConfig:
    """Slack Socket Mode credentials (bot front end only)."""

    bot_token: str = ""
    app_token: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.app_token)


@dataclass
class DraftConfig:
    """Top-level DraftCraft configuration."""

    llm: LlmConfig = field(default_factory=LlmConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    max_history_messages: int = DEFAULT_HISTORY_MESSAGES
    outputs_dir: Path = field(default_factory=lambda: Path.cwd() / "outputs")

    @classmethod
    def load(cls, env: Mapping[str, str] | None = None) -> DraftConfig:
        """Build and validate config from ``env`` (default: os.environ + .env).

        Every problem found is reported in a single ConfigurationError.
        """
        if env is None:
            load_dotenv(default_env_path(), override=False)
            env = os.environ

        issues: list[str] = []

        def get(key: str) -> str | None:
            value = env.get(key)
            if value is None:
                return None
            value = value.strip()
            return value or None

        provider = _parse_choice(get("LLM_PROVIDER"), LlmProvider, LlmProvider.OLLAMA, "LLM_PROVIDER", issues)
        mode = _parse_choice(get("EXECUTOR_MODE"), ExecutorMode, ExecutorMode.CODEX, "EXECUTOR_MODE", issues)

        llm = LlmConfig(
            provider=provider,
            model=get("LLM_MODEL") or get("OLLAMA_MODEL") or "",
            ollama_base_url=_parse_url(get("OLLAMA_BASE_URL"), DEFAULT_OLLAMA_BASE_URL, "OLLAMA_BASE_URL", issues),
            lmstudio_base_url=_parse_url(
                get("LMSTUDIO_BASE_URL"), DEFAULT_LMSTUDIO_BASE_URL, "LMSTUDIO_BASE_URL", issues
            ),
            openai_base_url=_parse_url(get("OPENAI_BASE_URL"), DEFAULT_OPENAI_BASE_URL, "OPENAI_BASE_URL", issues),
            openai_api_key=get("OPENAI_API_KEY"),
            anthropic_base_url=_parse_url(
                get("ANTHROPIC_BASE_URL"), DEFAULT_ANTHROPIC_BASE_URL, "ANTHROPIC_BASE_URL", issues
            ),
            anthropic_api_key=get("ANTHROPIC_API_KEY"),
            timeout_seconds=_parse_seconds(get("LLM_TIMEOUT_SECONDS"), "LLM_TIMEOUT_SECONDS", issues),
        )
        if not llm.model:
            issues.append("LLM_MODEL: required (OLLAMA_MODEL is accepted for compatibility)")
        if provider is LlmProvider.OPENAI and not llm.openai_api_key:
            issues.append("OPENAI_API_KEY: required when LLM_PROVIDER=openai")
        if provider is LlmProvider.ANTHROPIC and not llm.anthropic_api_key:
            issues.append("ANTHROPIC_API_KEY: required when LLM_PROVIDER=anthropic")

        workdir = Path(get("CODEX_WORKDIR") or os.getcwd()).expanduser().resolve()
        if not workdir.is_dir():
            issues.append(f"CODEX_WORKDIR: not an existing directory: {workdir}")

        executor = ExecutorConfig(
            mode=mode,
            codex_command_template=get("CODEX_COMMAND_TEMPLATE"),
            claude_command_template=get("CLAUDE_COMMAND_TEMPLATE"),
            workdir=str(workdir),
            run_timeout_seconds=_parse_seconds(get("RUN_TIMEOUT_SECONDS"), "RUN_TIMEOUT_SECONDS", issues),
        )
        if not executor.codex_command_template and not executor.claude_command_template:
            issues.append("CODEX_COMMAND_TEMPLATE or CLAUDE_COMMAND_TEMPLATE: at least one is required")
        elif mode is ExecutorMode.CODEX and not executor.codex_command_template:
            issues.append("CODEX_COMMAND_TEMPLATE: required when EXECUTOR_MODE=codex")
        elif mode is ExecutorMode.CLAUDE and not executor.claude_command_template:
            issues.append("CLAUDE_COMMAND_TEMPLATE: required when EXECUTOR_MODE=claude")

        max_history = _parse_history_limit(get("MAX_HISTORY_MESSAGES"), issues)

        if issues:
            raise ConfigurationError(
                "Missing or invalid environment variables:\n" + "\n".join(f"  {i}" for i in issues)
            )

        outputs_dir = Path(get("DRAFTCRAFT_OUTPUTS_DIR") or Path.cwd() / "outputs").expanduser().resolve()
        outputs_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            llm=llm,
            executor=executor,
            slack=SlackConfig(
                bot_token=get("SLACK_BOT_TOKEN") or "",
                app_token=get("SLACK_APP_TOKEN") or "",
            ),
            max_history_messages=max_history,
            outputs_dir=outputs_dir,
        )

    def require_slack(self) -> None:
        """Raise unless the bot front end has its credentials."""
        missing = []
        if not self.slack.bot_token:
            missing.append("SLACK_BOT_TOKEN")
        if not self.slack.app_token:
            missing.append("SLACK_APP_TOKEN")
        if missing:
            raise ConfigurationError(f"Slack bot requires: {', '.join(missing)}")

    def to_display_dict(self) -> dict:
        """Effective config for display, secrets masked."""
        return {
            "llm": {
                "provider": self.llm.provider.value,
                "model": self.llm.model,
                "ollama_base_url": self.llm.ollama_base_url,
                "lmstudio_base_url": self.llm.lmstudio_base_url,
                "openai_base_url": self.llm.openai_base_url,
                "openai_api_key": _mask(self.llm.openai_api_key),
                "anthropic_base_url": self.llm.anthropic_base_url,
                "anthropic_api_key": _mask(self.llm.anthropic_api_key),
                "timeout_seconds": self.llm.timeout_seconds,
            },
            "executor": {
                "mode": self.executor.mode.value,
                "codex_command_template": self.executor.codex_command_template,
                "claude_command_template": self.executor.claude_command_template,
                "workdir": self.executor.workdir,
                "run_timeout_seconds": self.executor.run_timeout_seconds,
            },
            "slack": {
                "bot_token": _mask(self.slack.bot_token),
                "app_token": _mask(self.slack.app_token),
            },
            "max_history_messages": self.max_history_messages,
            "outputs_dir": str(self.outputs_dir),
        }


def _mask(secret: str | None) -> str | None:
    if not secret:
        return None
    return f"{secret[:4]}…" if len(secret) > 8 else "…"


def _parse_choice(raw, enum_cls, default, key: str, issues: list[str]):
    if raw is None:
        return default
    try:
        return enum_cls(raw.lower())
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        issues.append(f"{key}: expected one of {choices}, got {raw!r}")
        return default


def _parse_url(raw: str | None, default: str, key: str, issues: list[str]) -> str:
    if raw is None:
        return default
    if not raw.startswith(("http://", "https://")):
        issues.append(f"{key}: not an http(s) URL: {raw!r}")
        return default
    return raw


def _parse_seconds(raw: str | None, key: str, issues: list[str]) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        issues.append(f"{key}: expected a number of seconds, got {raw!r}")
        return None
    if value <= 0:
        issues.append(f"{key}: must be positive")
        return None
    return value


def _parse_history_limit(raw: str | None, issues: list[str]) -> int:
    if raw is None:
        return DEFAULT_HISTORY_MESSAGES
    try:
        value = int(raw)
    except ValueError:
        issues.append(f"MAX_HISTORY_MESSAGES: expected an integer, got {raw!r}")
        return DEFAULT_HISTORY_MESSAGES
    if not MIN_HISTORY_MESSAGES <= value <= MAX_HISTORY_MESSAGES:
        issues.append(
            f"MAX_HISTORY_MESSAGES: must be between {MIN_HISTORY_MESSAGES} and {MAX_HISTORY_MESSAGES}"
        )
        return DEFAULT_HISTORY_MESSAGES
    return value
