"""Language-model provider adapters.

The practice and explanation services only depend on the small
`LLMProvider` interface below. `OpenAIChatProvider` talks to any
OpenAI-compatible `/chat/completions` endpoint over `httpx`;
`StubLLMProvider` answers locally and is what tests and offline
development run against.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import settings

logger = logging.getLogger("cofq.llm")

Message = Dict[str, str]


class LLMProviderError(RuntimeError):
    """Raised when the language-model provider fails or returns a malformed response."""


class LLMProvider:
    """Interface shared by all providers."""

    name = "base"
    model = ""

    async def complete(self, messages: List[Message], *, temperature: Optional[float] = None) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class OpenAIChatProvider(LLMProvider):
    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key or settings.LLM_API_KEY
        if not self.api_key:
            raise ValueError("LLM_API_KEY is not configured")
        self.base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self.model = model or settings.LLM_MODEL
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.LLM_TIMEOUT_SECONDS,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            transport=transport,
        )

    async def complete(self, messages: List[Message], *, temperature: Optional[float] = None) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
        }
        try:
            r = await self._client.post("/chat/completions", json=payload)
            r.raise_for_status()
        except httpx.HTTPStatusError as err:
            raise LLMProviderError(
                f"provider returned {err.response.status_code}: {err.response.text[:200]}"
            ) from err
        except httpx.RequestError as err:
            raise LLMProviderError(f"provider request failed: {err}") from err
        try:
            data = r.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as err:
            raise LLMProviderError(f"unexpected provider response: {r.text[:200]}") from err
        if not isinstance(content, str) or not content.strip():
            raise LLMProviderError("provider returned an empty answer")
        return content.strip()

    async def aclose(self) -> None:
        await self._client.aclose()


class StubLLMProvider(LLMProvider):
    """Deterministic provider for tests and offline development.

    Returns `reply` when given, otherwise a short answer that cites the
    first context passage when the prompt contains one. Every call is
    recorded in `calls`.
    """

    name = "stub"

    def __init__(self, reply: Optional[str] = None, *, model: str = "stub-1", error: Optional[Exception] = None):
        self.reply = reply
        self.model = model
        self.error = error
        self.calls: List[List[Message]] = []

    async def complete(self, messages: List[Message], *, temperature: Optional[float] = None) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        if self.reply is not None:
            return self.reply
        question = messages[-1]["content"] if messages else ""
        if "[1]" in question:
            return "Based on the study material, see [1]."
        return "No study material matched; answer from general knowledge."


_provider: Optional[LLMProvider] = None


def build_provider() -> LLMProvider:
    """Create the provider selected by `settings.LLM_PROVIDER`."""
    if settings.LLM_PROVIDER == "openai":
        return OpenAIChatProvider()
    return StubLLMProvider()


def get_llm_provider() -> LLMProvider:
    """FastAPI dependency returning the process-wide provider."""
    global _provider
    if _provider is None:
        _provider = build_provider()
        logger.info("llm provider ready: %s (%s)", _provider.name, _provider.model)
    return _provider


async def close_llm_provider() -> None:
    global _provider
    if _provider is not None:
        await _provider.aclose()
        _provider = None
