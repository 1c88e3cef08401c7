"""DraftCraft: refine a work request by chat, then run it with an external coding agent."""

__version__ = "0.3.0"

from draftcraft.config import DraftConfig
from draftcraft.engine import DraftEngine, ChatTurn, FinalizedPrompt, RunStart
from draftcraft.errors import (
    DraftCraftError,
    ConfigurationError,
    GuardRejected,
    Busy,
    AlreadyFinalizing,
    EmptyHistory,
    ProviderError,
)
from draftcraft.executor import Executor, ExecutorMode, ExecutorRouter, ExecutorSelection
from draftcraft.llm import ChatMessage, LlmClient, LlmProvider
from draftcraft.project_context import ProbeCache, ProjectContextResolver, extract_project_names
from draftcraft.runner import ProcessRunner, RunHandle
from draftcraft.session import Session, SessionRegistry
from draftcraft.streaming import StreamFlusher

__all__ = [
    "DraftConfig",
    "DraftEngine",
    "ChatTurn",
    "FinalizedPrompt",
    "RunStart",
    "DraftCraftError",
    "ConfigurationError",
    "GuardRejected",
    "Busy",
    "AlreadyFinalizing",
    "EmptyHistory",
    "ProviderError",
    "Executor",
    "ExecutorMode",
    "ExecutorRouter",
    "ExecutorSelection",
    "ChatMessage",
    "LlmClient",
    "LlmProvider",
    "ProbeCache",
    "ProjectContextResolver",
    "extract_project_names",
    "ProcessRunner",
    "RunHandle",
    "Session",
    "SessionRegistry",
    "StreamFlusher",
]
