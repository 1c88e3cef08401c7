"""Plain-language explanation of an agent run."""

from __future__ import annotations

import logging

from draftcraft.llm import ChatClient, ChatMessage
from draftcraft.runner import format_exit_code, strip_terminal

logger = logging.getLogger(__name__)

MAX_LOG_CHARS = 7000

EXPLAIN_SYSTEM_PROMPT = "\n".join([
    "You translate technical output for people who do not program.",
    "Avoid jargon and use plain English.",
    "Always answer in this format:",
    "Summary:",
    "- what was done",
    "- whether it succeeded or failed",
    "- next steps (one or two)",
    "At most 6 lines. No preamble.",
])


def compact_log_text(log_text: str) -> str:
    """Clean terminal output and keep only the tail."""
    return strip_terminal(log_text).strip()[-MAX_LOG_CHARS:]


def fallback_explanation(executor_label: str, exit_code: int | None) -> str:
    if exit_code == 0:
        return "\n".join([
            "Summary:",
            f"- {executor_label} finished successfully.",
            "- Open the log file shown above to see what changed.",
        ])
    return "\n".join([
        "Summary:",
        f"- {executor_label} ran into an error.",
        "- The last error message in the log usually explains the cause.",
        "- Paste the error into the conversation to work out how to retry.",
    ])


async def explain_executor_result(
    llm: ChatClient,
    executor_label: str,
    exit_code: int | None,
    log_text: str,
) -> str:
    """Ask the chat model to summarize a run; never raises."""
    try:
        explanation = await llm.chat([
            ChatMessage.system(EXPLAIN_SYSTEM_PROMPT),
            ChatMessage.user("\n".join([
                f"Executor: {executor_label}",
                f"exit code: {format_exit_code(exit_code)}",
                "Summarize the log below so someone new to programming can follow it.",
                "",
                compact_log_text(log_text),
            ])),
        ])
    except Exception as e:
        logger.warning(f"Explaining {executor_label} result failed: {e}")
        return fallback_explanation(executor_label, exit_code)

    return explanation.strip() or fallback_explanation(executor_label, exit_code)
