"""Draft engine: the refine → finalize → run cycle shared by both front ends.

    respond           chat turn under the session's busy guard
    finalize          one consolidated instruction, saved to a prompt file
    finalize_and_run  finalize, route, start the agent (finalizing guard
                      held until the run's exit has been delivered)
    explain           plain-language summary of a finished run
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path

from draftcraft.config import DraftConfig
from draftcraft.errors import ProviderError
from draftcraft.executor import (
    ExecutorRouter,
    ExecutorSelection,
    check_executor_available,
    run_selected_executor,
)
from draftcraft.explain import explain_executor_result
from draftcraft.llm import ChatClient, ChatMessage
from draftcraft.project_context import ProjectContextResolver
from draftcraft.runner import ExitCallback, ProcessRunner, RunHandle, StreamCallback, timestamp
from draftcraft.session import Session

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "\n".join([
    "You help the user write an implementation instruction for Codex CLI or Claude Code.",
    "Confirm the user's intent, ask about anything ambiguous, and refine the request",
    "into an instruction with concrete steps and a clear definition of done.",
    "Answer concisely.",
])

FINALIZER_SYSTEM_PROMPT = "\n".join([
    "You are an editor that merges a conversation log into one final instruction for an execution agent.",
    "Return only the final instruction.",
    "Make the goal, requirements, constraints and completion criteria explicit.",
])

CONTEXT_HEADER = "[Supplement: project notes]"


@dataclass
class ChatTurn:
    """Result of one respond() call."""
    reply: str
    resolved_projects: list[str] = field(default_factory=list)
    context_error: str | None = None


@dataclass
class FinalizedPrompt:
    text: str
    path: Path
    history_text: str


@dataclass
class RunStart:
    """A finalized instruction and the run it started."""
    handle: RunHandle
    selection: ExecutorSelection
    prompt: FinalizedPrompt

    @property
    def run_id(self) -> str:
        return self.handle.run_id

    @property
    def log_file_path(self) -> Path:
        return self.handle.log_file_path

    @property
    def prompt_path(self) -> Path:
        return self.prompt.path

    @property
    def prompt_text(self) -> str:
        return self.prompt.text


class DraftEngine:
    """Session operations on top of the chat client, router and runner."""

    def __init__(
        self,
        config: DraftConfig,
        llm: ChatClient,
        runner: ProcessRunner | None = None,
    ):
        self.config = config
        self.llm = llm
        self.runner = runner or ProcessRunner(
            config.outputs_dir,
            timeout_seconds=config.executor.run_timeout_seconds,
        )
        self.router = ExecutorRouter(llm, config.executor)
        self.resolver = ProjectContextResolver(llm, self.router, self.runner, config)

    @property
    def prompts_dir(self) -> Path:
        return Path(self.config.outputs_dir) / "prompts"

    def new_session(self, session_id: str, owner_id: str) -> Session:
        return Session(
            session_id=session_id,
            owner_id=owner_id,
            system_prompt=SYSTEM_PROMPT,
            executor_mode=self.config.executor.mode,
        )

    async def respond(self, session: Session, text: str) -> ChatTurn:
        """One chat turn. Raises Busy if a turn is already in flight.

        Project context failures are logged and the turn continues without
        context; ProviderError from the reply call propagates.
        """
        with session.turn():
            content = text
            resolved: list[str] = []
            context_error = None
            try:
                context = await self.resolver.resolve(text, session, session.owner_id)
            except Exception as e:
                logger.warning(f"Project context for session {session.session_id} failed: {e}")
                context_error = str(e)
            else:
                if context.context_text:
                    content = f"{text}\n\n{CONTEXT_HEADER}\n{context.context_text}"
                    resolved = context.resolved_projects

            limit = self.config.max_history_messages
            session.append_and_trim(ChatMessage.user(content), limit)
            reply = await self.llm.chat(list(session.history))
            session.append_and_trim(ChatMessage.assistant(reply), limit)
            return ChatTurn(reply=reply, resolved_projects=resolved, context_error=context_error)

    async def build_final_prompt(self, session: Session) -> str:
        """Merge the conversation into one instruction. Raises EmptyHistory."""
        history_text = session.format_history_for_finalizer()
        prompt = await self.llm.chat([
            ChatMessage.system(FINALIZER_SYSTEM_PROMPT),
            ChatMessage.user(history_text),
        ])
        if not prompt.strip():
            raise ProviderError("chat model", "returned an empty instruction")
        return prompt

    def save_prompt(self, prompt: str, channel_id: str | None = None) -> Path:
        """Write exactly ``prompt`` to a new file under ``<outputs>/prompts``."""
        self.prompts_dir.mkdir(parents=True, exist_ok=True)
        suffix = f"-{channel_id}" if channel_id else ""
        path = self.prompts_dir / f"prompt-{timestamp()}{suffix}.md"
        path.write_text(prompt, encoding="utf-8")
        return path

    async def _build_and_save(self, session: Session, channel_id: str | None) -> FinalizedPrompt:
        history_text = session.format_history_for_finalizer()
        prompt = await self.build_final_prompt(session)
        path = self.save_prompt(prompt, channel_id)
        session.latest_prompt_path = str(path)
        session.latest_prompt_text = prompt
        logger.info("Session %s: final instruction saved to %s", session.session_id, path)
        return FinalizedPrompt(text=prompt, path=path, history_text=history_text)

    async def finalize(self, session: Session, channel_id: str | None = None) -> FinalizedPrompt:
        """Build and save the final instruction without running it."""
        with session.finalizing_guard():
            return await self._build_and_save(session, channel_id)

    async def finalize_and_run(
        self,
        session: Session,
        owner_id: str,
        on_stream_chunk: StreamCallback | None = None,
        on_exit: ExitCallback | None = None,
        channel_id: str | None = None,
    ) -> RunStart:
        """Finalize, route and start the agent.

        Raises AlreadyFinalizing, EmptyHistory, ProviderError or
        ConfigurationError before the run starts. Once started, the run's
        outcome is only reported through ``on_exit`` and the handle.
        """
        session.begin_finalize()
        started = False
        try:
            check_executor_available(session.executor_mode, self.config.executor)
            finalized = await self._build_and_save(session, channel_id)
            selection = await self.router.route(session.executor_mode, finalized.history_text)
            logger.info(
                "Session %s: running %s (%s)", session.session_id, selection.label, selection.reason
            )

            async def deliver_exit(exit_code: int | None) -> None:
                try:
                    if on_exit is not None:
                        result = on_exit(exit_code)
                        if inspect.isawaitable(result):
                            await result
                finally:
                    session.end_finalize()

            handle = run_selected_executor(
                selection,
                self.config.executor,
                self.runner,
                prompt=finalized.text,
                prompt_file_path=str(finalized.path),
                owner_id=owner_id,
                channel_id=session.session_id,
                on_stream_chunk=on_stream_chunk,
                on_exit=deliver_exit,
            )
            started = True
        finally:
            if not started:
                session.end_finalize()

        return RunStart(handle=handle, selection=selection, prompt=finalized)

    async def explain(
        self,
        selection: ExecutorSelection,
        exit_code: int | None,
        log_file_path: str | Path,
    ) -> str:
        path = Path(log_file_path)
        log_text = path.read_text(encoding="utf-8", errors="replace") if path.exists() else ""
        return await explain_executor_result(self.llm, selection.label, exit_code, log_text)

    def get_stats(self) -> dict:
        return {
            "router": self.router.get_stats(),
            "runner": self.runner.get_stats(),
            "probes": self.resolver.get_stats(),
        }
