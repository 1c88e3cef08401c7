"""Chat-completion client for the supported model providers.

All providers share one call shape: ``chat(messages) -> text``.

    ollama     POST {base}/api/chat
    lmstudio   POST {base}/chat/completions   (OpenAI-compatible, no key)
    openai     POST {base}/chat/completions   (bearer key)
    anthropic  POST {base}/v1/messages        (x-api-key)

Non-success HTTP status, an unparsable body or an empty reply raise
ProviderError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from draftcraft.errors import ProviderError

if TYPE_CHECKING:
    from draftcraft.config import LlmConfig

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 2048


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LlmProvider(Enum):
    """Chat provider selection."""
    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


PROVIDER_LABELS = {
    LlmProvider.OLLAMA: "Ollama",
    LlmProvider.LMSTUDIO: "LM Studio",
    LlmProvider.OPENAI: "OpenAI",
    LlmProvider.ANTHROPIC: "Anthropic",
}


@dataclass(frozen=True)
class ChatMessage:
    """One role-tagged conversation message."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def system(cls, content: str) -> ChatMessage:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> ChatMessage:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> ChatMessage:
        return cls(Role.ASSISTANT, content)


class ChatClient(Protocol):
    """Anything that can turn an ordered message list into reply text."""

    async def chat(self, messages: list[ChatMessage]) -> str: ...


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _extract_text_content(value: Any) -> str:
    """OpenAI-style content is either a string or a list of typed parts."""
    if isinstance(value, str):
        return value.strip()
    if not isinstance(value, list):
        return ""
    parts = []
    for part in value:
        if isinstance(part, dict) and isinstance(part.get("text"), str) and part["text"]:
            parts.append(part["text"])
    return "\n".join(parts).strip()


class LlmClient:
    """HTTP chat client dispatching on the configured provider."""

    def __init__(self, config: LlmConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._request_count = 0

    @property
    def provider_label(self) -> str:
        return PROVIDER_LABELS[self.config.provider]

    async def chat(self, messages: list[ChatMessage]) -> str:
        provider = self.config.provider
        self._request_count += 1
        if provider is LlmProvider.OLLAMA:
            return await self._chat_ollama(messages)
        if provider is LlmProvider.LMSTUDIO:
            return await self._chat_openai_compatible(
                self.config.lmstudio_base_url, None, messages,
            )
        if provider is LlmProvider.OPENAI:
            if not self.config.openai_api_key:
                raise ProviderError(self.provider_label, "OPENAI_API_KEY is not set")
            return await self._chat_openai_compatible(
                self.config.openai_base_url, self.config.openai_api_key, messages,
            )
        if not self.config.anthropic_api_key:
            raise ProviderError(self.provider_label, "ANTHROPIC_API_KEY is not set")
        return await self._chat_anthropic(messages)

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> Any:
        """POST JSON and return the decoded body, mapping failures to ProviderError."""
        label = self.provider_label
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(label, f"request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            body = response.text
            logger.debug("%s returned %s: %s", label, response.status_code, body[:500])
            raise ProviderError(label, body, status_code=response.status_code, body=body)

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(label, "response body is not valid JSON") from e

    async def _chat_ollama(self, messages: list[ChatMessage]) -> str:
        data = await self._post(
            f"{_normalize_base_url(self.config.ollama_base_url)}/api/chat",
            {
                "model": self.config.model,
                "stream": False,
                "messages": [m.to_dict() for m in messages],
            },
            {"Content-Type": "application/json"},
        )
        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ProviderError(self.provider_label, "response did not have the expected shape")
        return content.strip()

    async def _chat_openai_compatible(
        self,
        base_url: str,
        api_key: str | None,
        messages: list[ChatMessage],
    ) -> str:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        data = await self._post(
            f"{_normalize_base_url(base_url)}/chat/completions",
            {"model": self.config.model, "messages": [m.to_dict() for m in messages]},
            headers,
        )
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ProviderError(self.provider_label, "response did not have the expected shape")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise ProviderError(self.provider_label, "response did not have the expected shape")

        content = _extract_text_content(message.get("content"))
        if not content:
            raise ProviderError(self.provider_label, "response contained no text")
        return content

    async def _chat_anthropic(self, messages: list[ChatMessage]) -> str:
        system = "\n\n".join(m.content for m in messages if m.role is Role.SYSTEM).strip()
        payload: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": [m.to_dict() for m in messages if m.role is not Role.SYSTEM],
        }
        if system:
            payload["system"] = system

        data = await self._post(
            f"{_normalize_base_url(self.config.anthropic_base_url)}/v1/messages",
            payload,
            {
                "Content-Type": "application/json",
                "x-api-key": self.config.anthropic_api_key or "",
                "anthropic-version": ANTHROPIC_VERSION,
            },
        )
        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            raise ProviderError(self.provider_label, "response did not have the expected shape")

        text = "\n".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        ).strip()
        if not text:
            raise ProviderError(self.provider_label, "response contained no text")
        return text

    def get_stats(self) -> dict[str, Any]:
        return {
            "provider": self.config.provider.value,
            "model": self.config.model,
            "request_count": self._request_count,
        }
