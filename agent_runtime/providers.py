from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from .config import get_settings
from .errors import LLMError

logger = logging.getLogger("agent-runtime")

Message = Dict[str, str]

OPENAI_API_URL = "https://api.openai.com/v1"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1"


@dataclass
class Completion:
    """Normalized result from a provider."""

    content: str
    model: Optional[str] = None
    alias: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


class LLMProvider(Protocol):
    """
    Capability contract for model backends.

    `complete` returns one Completion or raises LLMError with a category;
    `stream` yields text deltas and is consumed by pulling, so a slow reader
    applies backpressure to the producer.
    """

    async def complete(self, messages: Sequence[Message], params: Mapping[str, Any]) -> Completion:  # pragma: no cover - interface only
        ...

    def stream(self, messages: Sequence[Message], params: Mapping[str, Any]) -> AsyncIterator[str]:  # pragma: no cover - interface only
        ...


class BaseProvider:
    """Convenience base: streaming falls back to a single chunk from `complete`."""

    async def complete(self, messages: Sequence[Message], params: Mapping[str, Any]) -> Completion:  # pragma: no cover - interface only
        raise NotImplementedError

    async def stream(self, messages: Sequence[Message], params: Mapping[str, Any]) -> AsyncIterator[str]:
        completion = await self.complete(messages, params)
        yield completion.content


class StubProvider(BaseProvider):
    """
    Deterministic provider that needs no network.

    Echoes the last user message so the runtime can be exercised end to end
    without an API key. JSON-mode calls get an empty object.
    """

    def __init__(self, reply: Optional[str] = None) -> None:
        self.reply = reply

    async def complete(self, messages: Sequence[Message], params: Mapping[str, Any]) -> Completion:
        if self.reply is not None:
            return Completion(content=self.reply, model="stub")
        if params.get("json"):
            return Completion(content="{}", model="stub")
        last_user = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
        return Completion(content=f"stub response: {last_user}".strip(), model="stub")


def _classify_status(status: int, body: str) -> str:
    if status in (401, 403):
        return LLMError.AUTH
    if status == 429:
        return LLMError.RATE_LIMITED
    if status >= 500 or status == 408:
        return LLMError.TRANSIENT
    if "context_length" in body:
        return "context_overflow"
    if "content_filter" in body or "content_policy" in body:
        return LLMError.CONTENT_FILTERED
    return "invalid_request"


class OpenAICompatibleProvider(BaseProvider):
    """Chat-completions client for OpenAI-compatible endpoints."""

    default_model = "gpt-4o-mini"
    base_url = OPENAI_API_URL

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model or self.default_model
        if base_url:
            self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(self, messages: Sequence[Message], params: Mapping[str, Any], *, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": params.get("model") or self.model, "messages": list(messages)}
        if params.get("temperature") is not None:
            body["temperature"] = params["temperature"]
        if params.get("max_tokens") is not None:
            body["max_tokens"] = params["max_tokens"]
        if params.get("json"):
            body["response_format"] = {"type": "json_object"}
        if stream:
            body["stream"] = True
        return body

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def complete(self, messages: Sequence[Message], params: Mapping[str, Any]) -> Completion:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=self._body(messages, params, stream=False),
                )
        except httpx.TimeoutException as exc:
            raise LLMError(LLMError.TRANSIENT, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise LLMError(LLMError.TRANSIENT, f"transport error: {exc}") from exc

        if resp.status_code >= 400:
            raise LLMError(_classify_status(resp.status_code, resp.text), f"HTTP {resp.status_code}: {resp.text[:200]}")

        data = resp.json()
        choice = data["choices"][0]
        if choice.get("finish_reason") == "content_filter":
            raise LLMError(LLMError.CONTENT_FILTERED, "completion was filtered")
        return Completion(
            content=choice["message"].get("content") or "",
            model=data.get("model"),
            finish_reason=choice.get("finish_reason"),
            usage=data.get("usage") or {},
        )

    async def stream(self, messages: Sequence[Message], params: Mapping[str, Any]) -> AsyncIterator[str]:
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=self._body(messages, params, stream=True),
                ) as resp:
                    if resp.status_code >= 400:
                        text = (await resp.aread()).decode("utf-8", "replace")
                        raise LLMError(_classify_status(resp.status_code, text), f"HTTP {resp.status_code}")
                    async for line in resp.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        payload = line[len("data: "):].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            delta = json.loads(payload)["choices"][0]["delta"].get("content")
                        except (json.JSONDecodeError, KeyError, IndexError):
                            continue
                        if delta:
                            yield delta
        except httpx.TimeoutException as exc:
            raise LLMError(LLMError.TRANSIENT, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise LLMError(LLMError.TRANSIENT, f"transport error: {exc}") from exc


class OpenAIProvider(OpenAICompatibleProvider):
    default_model = "gpt-4o-mini"
    base_url = OPENAI_API_URL


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter: one API key, many models (OpenAI, Claude, Gemini, etc.)."""

    default_model = "openai/gpt-4o-mini"
    base_url = OPENROUTER_API_URL


class ProviderRegistry:
    """Maps LLM aliases to providers. Unknown aliases resolve to "default"."""

    def __init__(self, providers: Optional[Mapping[str, LLMProvider]] = None) -> None:
        self._providers: Dict[str, LLMProvider] = dict(providers or {})

    def register(self, alias: str, provider: LLMProvider) -> None:
        self._providers[alias] = provider

    def resolve_alias(self, alias: str) -> str:
        if alias in self._providers:
            return alias
        return "default"

    def get(self, alias: str) -> LLMProvider:
        resolved = self.resolve_alias(alias)
        if resolved not in self._providers:
            raise KeyError(f"No provider registered for alias {alias!r}")
        return self._providers[resolved]

    def aliases(self) -> List[str]:
        return list(self._providers)


def build_provider(
    kind: Optional[str] = None,
    *,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key_env: Optional[str] = None,
) -> LLMProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    kind = (kind or settings.provider_name).lower()
    if kind == "openrouter":
        api_key = _get_env(api_key_env or "OPENROUTER_API_KEY")
        if not api_key:
            logger.warning("provider=openrouter but no API key set; using stub")
            return StubProvider()
        return OpenRouterProvider(api_key=api_key, model=model or _get_env("OPENROUTER_MODEL"), base_url=base_url)
    if kind == "openai":
        api_key = _get_env(api_key_env or "OPENAI_API_KEY")
        if not api_key:
            logger.warning("provider=openai but no API key set; using stub")
            return StubProvider()
        return OpenAIProvider(api_key=api_key, model=model, base_url=base_url)

    return StubProvider()


def build_registry(llms: Mapping[str, Any]) -> ProviderRegistry:
    """Build a registry from an AgentSpec's LLM aliases, adding "default" when absent."""
    registry = ProviderRegistry()
    for alias, cfg in llms.items():
        registry.register(
            alias,
            build_provider(cfg.provider, model=cfg.model, base_url=cfg.base_url, api_key_env=cfg.api_key_env),
        )
    if "default" not in registry.aliases():
        registry.register("default", build_provider())
    return registry


def _get_env(name: str) -> Optional[str]:
    return os.getenv(name) or None
