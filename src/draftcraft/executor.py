"""Executor routing: decide which external agent runs a finalized instruction.

Two interchangeable agents are supported:
  - codex:  implementation-grade work, repository edits (the default)
  - claude: lighter editorial work, prose and formatting

Routing:
1. Fixed mode uses the configured agent, or fails if it has no template.
2. Auto mode with a single configured agent uses that agent.
3. Auto mode with both configured asks the chat model for one identifier.
4. Unmatched answers and failed classification calls fall back to codex.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from draftcraft.errors import ConfigurationError
from draftcraft.llm import ChatClient, ChatMessage

if TYPE_CHECKING:
    from draftcraft.config import ExecutorConfig
    from draftcraft.runner import ExitCallback, ProcessRunner, RunHandle, StreamCallback

logger = logging.getLogger(__name__)


class Executor(Enum):
    """External agents that can run an instruction."""
    CODEX = "codex"
    CLAUDE = "claude"


class ExecutorMode(Enum):
    """Configured routing mode."""
    CODEX = "codex"
    CLAUDE = "claude"
    AUTO = "auto"


DEFAULT_EXECUTOR = Executor.CODEX

# claude wins when an answer names both
MATCH_ORDER = (Executor.CLAUDE, Executor.CODEX)

EXECUTOR_LABELS = {
    Executor.CODEX: "Codex CLI",
    Executor.CLAUDE: "Claude Code",
}

ROUTER_SYSTEM_PROMPT = "\n".join([
    "You are an executor router.",
    "Answer with exactly one word: `codex` or `claude`.",
    "Prefer codex for implementation changes and repository edits,",
    "and claude for prose-centric or light formatting work.",
])


@dataclass
class ExecutorSelection:
    """Routing decision with a human-readable reason."""
    executor: Executor
    reason: str

    @property
    def label(self) -> str:
        return executor_label(self.executor)


def executor_label(executor: Executor) -> str:
    return EXECUTOR_LABELS[executor]


def parse_executor_mode(raw: str) -> ExecutorMode | None:
    """Parse user input like ``"Claude "`` into a mode, or None if invalid."""
    try:
        return ExecutorMode(raw.strip().lower())
    except ValueError:
        return None


def available_executors(config: ExecutorConfig) -> list[Executor]:
    """Agents with a usable launch template, in preference order."""
    items = []
    if config.codex_command_template:
        items.append(Executor.CODEX)
    if config.claude_command_template:
        items.append(Executor.CLAUDE)
    return items


def command_template_for(executor: Executor, config: ExecutorConfig) -> str:
    template = (
        config.codex_command_template
        if executor is Executor.CODEX
        else config.claude_command_template
    )
    if not template:
        key = "CODEX_COMMAND_TEMPLATE" if executor is Executor.CODEX else "CLAUDE_COMMAND_TEMPLATE"
        raise ConfigurationError(f"{key} is not set.")
    return template


def check_executor_available(mode: ExecutorMode, config: ExecutorConfig) -> None:
    """Raise ConfigurationError if ``mode`` cannot launch any agent.

    Synchronous, so callers can reject a run before any model call or file write.
    """
    available = available_executors(config)
    if not available:
        raise ConfigurationError(
            "No executable agent available. "
            "Set CODEX_COMMAND_TEMPLATE or CLAUDE_COMMAND_TEMPLATE."
        )
    if mode is not ExecutorMode.AUTO:
        command_template_for(Executor(mode.value), config)


def match_executor(response: str) -> Executor | None:
    """Return the first agent, in MATCH_ORDER, named anywhere in a model answer."""
    normalized = response.lower().strip()
    for executor in MATCH_ORDER:
        if executor.value in normalized:
            return executor
    return None


class ExecutorRouter:
    """Routes finalized instructions to an external agent.

    Pure decision logic: the only I/O is the optional classification call
    in auto mode, made through the injected chat client.
    """

    def __init__(self, llm: ChatClient, config: ExecutorConfig):
        self._llm = llm
        self._config = config
        self._routing_stats = {
            "fixed": 0,
            "only_available": 0,
            "classified": 0,
            "unmatched": 0,
            "fallback": 0,
        }

    async def route(self, mode: ExecutorMode, history_text: str) -> ExecutorSelection:
        """Select one agent for ``mode``.

        Raises ConfigurationError when the requested agent (or any agent)
        has no launch template.
        """
        check_executor_available(mode, self._config)
        available = available_executors(self._config)

        if mode is not ExecutorMode.AUTO:
            self._routing_stats["fixed"] += 1
            return ExecutorSelection(Executor(mode.value), "fixed by configuration")

        if len(available) == 1:
            self._routing_stats["only_available"] += 1
            return ExecutorSelection(available[0], "only available agent")

        try:
            response = await self._llm.chat([
                ChatMessage.system(ROUTER_SYSTEM_PROMPT),
                ChatMessage.user("\n".join([
                    "Pick the best executor for the conversation below.",
                    "Available: codex, claude",
                    "",
                    history_text,
                ])),
            ])
        except Exception as e:
            logger.warning(f"Executor classification failed, defaulting to codex: {e}")
            self._routing_stats["fallback"] += 1
            return ExecutorSelection(DEFAULT_EXECUTOR, "auto-selection failed, defaulted")

        matched = match_executor(response)
        if matched is None:
            logger.debug("Classification answer matched no executor: %r", response[:200])
            self._routing_stats["unmatched"] += 1
            return ExecutorSelection(
                DEFAULT_EXECUTOR, "auto-selection: no executor named, defaulted"
            )

        self._routing_stats["classified"] += 1
        return ExecutorSelection(matched, f"auto-selection: model recommended {matched.value}")

    def get_stats(self) -> dict[str, Any]:
        total = sum(self._routing_stats.values())
        return {"total_routes": total, **self._routing_stats}


def run_selected_executor(
    selection: ExecutorSelection,
    config: ExecutorConfig,
    runner: ProcessRunner,
    *,
    prompt: str,
    prompt_file_path: str,
    owner_id: str,
    channel_id: str,
    on_stream_chunk: StreamCallback | None = None,
    on_exit: ExitCallback | None = None,
) -> RunHandle:
    """Start the selected agent in the configured working directory."""
    return runner.start(
        agent_name=selection.executor.value,
        command_template=command_template_for(selection.executor, config),
        prompt=prompt,
        prompt_file_path=prompt_file_path,
        owner_id=owner_id,
        channel_id=channel_id,
        workdir=config.workdir,
        on_stream_chunk=on_stream_chunk,
        on_exit=on_exit,
    )
