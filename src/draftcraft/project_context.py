"""Project context: short summaries of subjects the user mentions.

When a message names a project (``[my-app]``, or a quoted name next to the
word "project"/"repo"), an agent is run once with a read-only survey prompt,
its log is summarized by the chat model, and the summary is attached to the
user's message. Summaries are cached per session and never recomputed.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from draftcraft.executor import ExecutorRouter, run_selected_executor
from draftcraft.llm import ChatClient, ChatMessage
from draftcraft.runner import strip_terminal, timestamp

if TYPE_CHECKING:
    from draftcraft.config import DraftConfig
    from draftcraft.runner import ProcessRunner
    from draftcraft.session import Session

logger = logging.getLogger(__name__)

MAX_SUMMARY_LOG_CHARS = 7000
MAX_SUBJECT_CHARS = 80

BRACKET_RE = re.compile(r"\[([^\[\]\r\n]{1,80})\]")
QUOTE_RES = (
    re.compile(r"「([^「」\r\n]{1,80})」"),
    re.compile(r"\"([^\"\r\n]{1,80})\""),
    re.compile(r"“([^“”\r\n]{1,80})”"),
)
PROJECT_KEYWORD_RE = re.compile(r"project|repo|repository|プロジェクト", re.IGNORECASE)
FILE_SEGMENT_RE = re.compile(r"[^a-zA-Z0-9_-]")

SUMMARY_SYSTEM_PROMPT = "\n".join([
    "You explain software projects to non-specialists.",
    "Rephrase jargon in plain words.",
    "Answer with 3 to 5 short bullet points.",
])


def extract_project_names(text: str) -> list[str]:
    """Subject names mentioned in ``text``, deduplicated in first-seen order.

    Bracketed names always count. Quoted names count only when the text
    also mentions a project-like keyword.
    """
    found: list[str] = []

    def add(value: str) -> None:
        value = value.strip()
        if len(value) >= 2 and value not in found:
            found.append(value)

    for match in BRACKET_RE.finditer(text):
        add(match.group(1))

    if PROJECT_KEYWORD_RE.search(text):
        quoted = []
        for pattern in QUOTE_RES:
            quoted.extend((m.start(), m.group(1)) for m in pattern.finditer(text))
        for _, value in sorted(quoted):
            add(value)

    return found


def sanitize_file_segment(value: str) -> str:
    return FILE_SEGMENT_RE.sub("_", value)[:48] or "project"


def build_probe_prompt(project_name: str, workdir: str) -> str:
    return "\n".join([
        f"Project: {project_name}",
        f"Working directory: {workdir}",
        "",
        "Follow these rules:",
        "- Investigate read-only (do not edit or delete files, do not change git state)",
        "- Goal: get a short overview of this project",
        "",
        "What to find out:",
        "1. What this project does",
        "2. Its main features and folders",
        "3. Where to look first when asked to add a feature",
        "4. Anything you could not determine",
    ])


def placeholder_summary(project_name: str) -> str:
    return "\n".join([
        f"- A survey of {project_name} was attempted, but automatic summarization failed.",
        "- Check the run log to identify its main folders and features manually.",
    ])


@dataclass
class ProjectContext:
    """Context block for one user message."""
    context_text: str | None
    resolved_projects: list[str] = field(default_factory=list)


class ProbeCache:
    """Write-once subject summaries with single-flight computation.

    Concurrent lookups of the same uncached subject share one computation.
    """

    def __init__(self):
        self._summaries: dict[str, str] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def get(self, name: str) -> str | None:
        return self._summaries.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._summaries

    def __len__(self) -> int:
        return len(self._summaries)

    async def get_or_compute(self, name: str, compute: Callable[[], Awaitable[str]]) -> str:
        cached = self._summaries.get(name)
        if cached is not None:
            return cached

        task = self._pending.get(name)
        if task is None:
            task = asyncio.ensure_future(self._compute_and_store(name, compute))
            self._pending[name] = task
            task.add_done_callback(lambda _t: self._pending.pop(name, None))
        return await asyncio.shield(task)

    async def _compute_and_store(self, name: str, compute: Callable[[], Awaitable[str]]) -> str:
        summary = await compute()
        return self._summaries.setdefault(name, summary)


class ProjectContextResolver:
    """Resolves subject names in a message to cached project summaries."""

    def __init__(
        self,
        llm: ChatClient,
        router: ExecutorRouter,
        runner: ProcessRunner,
        config: DraftConfig,
    ):
        self._llm = llm
        self._router = router
        self._runner = runner
        self._config = config
        self._probe_count = 0

    @property
    def prompts_dir(self) -> Path:
        return Path(self._config.outputs_dir) / "project-probe-prompts"

    async def resolve(self, message: str, session: Session, owner_id: str) -> ProjectContext:
        names = extract_project_names(message)
        if not names:
            return ProjectContext(context_text=None)

        blocks = []
        for name in names:
            summary = await session.probe_cache.get_or_compute(
                name, lambda name=name: self._probe_and_summarize(name, session, owner_id)
            )
            blocks.append(f"[{name}: project notes]\n{summary}")

        return ProjectContext(context_text="\n\n".join(blocks), resolved_projects=names)

    async def _probe_and_summarize(self, name: str, session: Session, owner_id: str) -> str:
        try:
            executor_name, log_text = await self._probe(name, session, owner_id)
        except Exception as e:
            logger.warning(f"Project probe for {name!r} failed: {e}")
            return placeholder_summary(name)
        return await self._summarize(name, executor_name, log_text)

    async def _probe(self, name: str, session: Session, owner_id: str) -> tuple[str, str]:
        """Run one read-only survey; returns (agent label, raw log text)."""
        selection = await self._router.route(session.executor_mode, f"Project survey: {name}")

        prompt = build_probe_prompt(name, self._config.executor.workdir)
        self.prompts_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = self.prompts_dir / f"probe-{timestamp()}-{sanitize_file_segment(name)}.md"
        prompt_path.write_text(f"{prompt}\n", encoding="utf-8")

        handle = run_selected_executor(
            selection,
            self._config.executor,
            self._runner,
            prompt=prompt,
            prompt_file_path=str(prompt_path),
            owner_id=owner_id,
            channel_id=session.session_id,
        )
        self._probe_count += 1
        exit_code = await handle.wait()
        logger.info("Project probe %s for %r finished with %s", handle.run_id, name, exit_code)

        log_path = Path(handle.log_file_path)
        log_text = log_path.read_text(encoding="utf-8", errors="replace") if log_path.exists() else ""
        return selection.label, log_text

    async def _summarize(self, name: str, executor_name: str, log_text: str) -> str:
        clipped = strip_terminal(log_text).strip()[-MAX_SUMMARY_LOG_CHARS:]
        try:
            summary = await self._llm.chat([
                ChatMessage.system(SUMMARY_SYSTEM_PROMPT),
                ChatMessage.user("\n".join([
                    f"Project: {name}",
                    f"Surveyed with: {executor_name}",
                    "Write short notes on this project from the survey log below.",
                    "",
                    clipped or "(empty log)",
                ])),
            ])
        except Exception as e:
            logger.warning(f"Summarizing probe log for {name!r} failed: {e}")
            return placeholder_summary(name)
        return summary.strip() or placeholder_summary(name)

    def get_stats(self) -> dict:
        return {"probes": self._probe_count}
