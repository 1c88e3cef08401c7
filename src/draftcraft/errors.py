"""Exception taxonomy shared by the engine and both front ends."""

from __future__ import annotations


class DraftCraftError(Exception):
    """Base class for every error DraftCraft raises on purpose."""


class ConfigurationError(DraftCraftError):
    """Missing or invalid configuration (no usable executor, bad env values)."""


class GuardRejected(DraftCraftError):
    """A per-session single-flight guard refused a second operation."""


class Busy(GuardRejected):
    """A chat turn is already in flight for this session."""

    def __init__(self, message: str = "A previous reply is still being processed. Try again shortly."):
        super().__init__(message)


class AlreadyFinalizing(GuardRejected):
    """A finalize-and-run cycle is already in flight for this session."""

    def __init__(self, message: str = "Finalization is already in progress. Try again shortly."):
        super().__init__(message)


class EmptyHistory(DraftCraftError):
    """Nothing to finalize: the conversation has no user/assistant turns."""

    def __init__(self, message: str = "Conversation history is empty; nothing to finalize."):
        super().__init__(message)


class ProviderError(DraftCraftError):
    """Chat provider failure: non-success HTTP status or unusable response body."""

    def __init__(self, provider: str, message: str, status_code: int | None = None, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        detail = f"{provider} API error: {message}"
        if status_code is not None:
            detail = f"{provider} API error: {status_code} {message}"
        super().__init__(detail)


class SpawnFailure(DraftCraftError):
    """The agent process could not be started.

    Never raised to callers of the runner: it is recorded in the run log and
    reported as a synthetic ``None`` exit code.
    """
