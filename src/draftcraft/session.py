"""Per-conversation state: history, single-flight guards, probe cache.

Guards are plain booleans. The engine runs on one event loop, and every
check-and-set below is synchronous, so no lock is needed: nothing can
interleave between the check and the set.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from draftcraft.errors import AlreadyFinalizing, Busy, EmptyHistory
from draftcraft.executor import ExecutorMode
from draftcraft.llm import ChatMessage, Role
from draftcraft.project_context import ProbeCache

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One logical conversation channel."""

    session_id: str
    owner_id: str
    system_prompt: str
    executor_mode: ExecutorMode = ExecutorMode.CODEX
    history: list[ChatMessage] = field(default_factory=list)
    probe_cache: ProbeCache = field(default_factory=ProbeCache)
    busy: bool = False
    finalizing: bool = False
    latest_prompt_path: str | None = None
    latest_prompt_text: str | None = None

    def __post_init__(self):
        if not self.history:
            self.history = [ChatMessage.system(self.system_prompt)]
        elif self.history[0].role is not Role.SYSTEM:
            raise ValueError("Session history must start with a system message")

    # -- history -----------------------------------------------------------

    def append_and_trim(self, message: ChatMessage, max_messages: int) -> None:
        """Append, then keep the system message plus the last ``max_messages``."""
        if max_messages < 0:
            raise ValueError(f"max_messages must be >= 0, got {max_messages}")
        self.history.append(message)
        if len(self.history) > max_messages + 1:
            dropped = len(self.history) - (max_messages + 1)
            recent = self.history[1:][-max_messages:] if max_messages > 0 else []
            self.history = [self.history[0], *recent]
            logger.debug("Session %s: trimmed %d old messages", self.session_id, dropped)

    @property
    def turns(self) -> list[ChatMessage]:
        """History without the leading system message."""
        return [m for m in self.history if m.role is not Role.SYSTEM]

    def format_history_for_finalizer(self) -> str:
        """``User:``/``Assistant:`` transcript. Raises EmptyHistory if there are no turns."""
        turns = self.turns
        if not turns:
            raise EmptyHistory()
        return "\n\n".join(
            f"{'User' if m.role is Role.USER else 'Assistant'}: {m.content}"
            for m in turns
        )

    def reset(self) -> None:
        """Fresh history, empty probe cache, no remembered prompt."""
        self.history = [ChatMessage.system(self.system_prompt)]
        self.probe_cache = ProbeCache()
        self.latest_prompt_path = None
        self.latest_prompt_text = None

    # -- guards ------------------------------------------------------------

    def begin_turn(self) -> None:
        if self.busy:
            raise Busy()
        self.busy = True

    def end_turn(self) -> None:
        self.busy = False

    @contextmanager
    def turn(self) -> Iterator[Session]:
        self.begin_turn()
        try:
            yield self
        finally:
            self.end_turn()

    def begin_finalize(self) -> None:
        if self.finalizing:
            raise AlreadyFinalizing()
        self.finalizing = True

    def end_finalize(self) -> None:
        self.finalizing = False

    @contextmanager
    def finalizing_guard(self) -> Iterator[Session]:
        self.begin_finalize()
        try:
            yield self
        finally:
            self.end_finalize()


class SessionRegistry:
    """Sessions keyed by channel id, owned by a front end."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def create(self, session: Session) -> Session:
        if session.session_id in self._sessions:
            raise KeyError(f"Session already exists: {session.session_id}")
        self._sessions[session.session_id] = session
        logger.info("Session %s created (owner %s)", session.session_id, session.owner_id)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def ensure(self, session_id: str, factory) -> Session:
        """Return the session for ``session_id``, creating it via ``factory()``."""
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        return self.create(factory())

    def remove(self, session_id: str) -> Session | None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info("Session %s removed", session_id)
        return session

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self):
        return iter(list(self._sessions.values()))
