"""Provider adapters: thin streaming clients behind a uniform interface.

Each provider turns (messages, options) into its HTTP wire format and
yields the completion text chunk by chunk. The Dispatcher is polymorphic
over BaseProvider; nothing here knows about caching, rate limits or
circuits.

Provider-specific behaviors:
  - OpenAI: chat completions over Server-Sent Events (also any
    OpenAI-compatible endpoint via base_url)
  - Ollama: local /api/chat streaming newline-delimited JSON, no API key

Models are addressed either by plain name or by a unified
"provider:model" id (e.g. "ollama:llama3:8b").
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from llm_dispatch.gateway.errors import ProviderError, ProviderErrorType, ProviderNotConfiguredError
from llm_dispatch.gateway.types import (
    KNOWN_PROVIDERS,
    CancellationToken,
    CompletionOptions,
    ConnectionResult,
    Message,
    provider_key,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class BaseProvider(ABC):
    """Base class for all provider adapters."""

    name: str = ""
    default_model: str = ""
    default_base_url: str = ""
    requires_api_key: bool = True

    def __init__(
        self,
        api_key: str = "",
        model: str = "",
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def get_completion(
        self,
        messages: list[Message],
        options: CompletionOptions,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Stream the completion text chunk by chunk."""
        ...

    @abstractmethod
    async def get_available_models(self) -> list[str]:
        """List model ids this provider can serve."""
        ...

    async def test_connection(self) -> ConnectionResult:
        """Probe the provider by listing its models."""
        start = time.monotonic()
        try:
            models = await self.get_available_models()
        except ProviderError as e:
            return ConnectionResult(False, str(e), int((time.monotonic() - start) * 1000))

        latency_ms = int((time.monotonic() - start) * 1000)
        return ConnectionResult(True, f"Connected to {self.name} ({len(models)} models available)", latency_ms)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        raise ProviderError.from_status(resp.status_code, body, provider=self.name)

    def _network_error(self, exc: httpx.HTTPError) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            message = f"Timeout after {self.timeout}s"
        else:
            message = f"Network error: {exc}"
        return ProviderError(ProviderErrorType.NETWORK_ERROR, message, provider=self.name)


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible endpoints)
# ---------------------------------------------------------------------------


class OpenAIProvider(BaseProvider):
    """OpenAI Chat Completions over SSE."""

    name = "openai"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def get_completion(
        self,
        messages: list[Message],
        options: CompletionOptions,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        payload = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "temperature": options.temperature,
            "stream": True,
            **options.extra,
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens

        try:
            async with self._client() as client:
                async with client.stream("POST", "/chat/completions", json=payload) as resp:
                    await self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:") :].strip()
                        if data == "[DONE]":
                            break
                        chunk = json.loads(data)
                        choices = chunk.get("choices") or [{}]
                        content = (choices[0].get("delta") or {}).get("content")
                        if content:
                            yield content
        except httpx.HTTPError as e:
            raise self._network_error(e) from e

    async def get_available_models(self) -> list[str]:
        try:
            async with self._client() as client:
                resp = await client.get("/models")
                await self._raise_for_status(resp)
                data = resp.json()
        except httpx.HTTPError as e:
            raise self._network_error(e) from e
        return sorted(m["id"] for m in data.get("data", []))


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


class OllamaProvider(BaseProvider):
    """Local Ollama server, NDJSON streaming."""

    name = "ollama"
    default_model = "llama3"
    default_base_url = "http://localhost:11434"
    requires_api_key = False

    async def get_completion(
        self,
        messages: list[Message],
        options: CompletionOptions,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        model_options = {"temperature": options.temperature}
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        payload = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "options": {**model_options, **options.extra},
        }

        try:
            async with self._client() as client:
                async with client.stream("POST", "/api/chat", json=payload) as resp:
                    await self._raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        if not line.strip():
                            continue
                        chunk = json.loads(line)
                        if "error" in chunk:
                            raise ProviderError(ProviderErrorType.SERVER_ERROR, str(chunk["error"]), provider=self.name)
                        content = (chunk.get("message") or {}).get("content")
                        if content:
                            yield content
                        if chunk.get("done"):
                            break
        except httpx.HTTPError as e:
            raise self._network_error(e) from e

    async def get_available_models(self) -> list[str]:
        try:
            async with self._client() as client:
                resp = await client.get("/api/tags")
                await self._raise_for_status(resp)
                data = resp.json()
        except httpx.HTTPError as e:
            raise self._network_error(e) from e
        return sorted(m["name"] for m in data.get("models", []))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

PROVIDER_REGISTRY: dict[str, type[BaseProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    OllamaProvider.name: OllamaProvider,
}


def get_provider(name: str, **kwargs) -> BaseProvider:
    """Factory: build the adapter registered for a provider name."""
    cls = PROVIDER_REGISTRY.get(provider_key(name))
    if cls is None:
        raise ProviderNotConfiguredError(name, f"No adapter registered for provider: {name}")
    return cls(**kwargs)


def parse_unified_model(model_id: str, known_providers=None) -> tuple[str | None, str]:
    """Split "provider:model" into its parts.

    Only a known provider prefix is split off, so Ollama tags such as
    "llama3:8b" stay intact. Returns (None, model_id) otherwise.
    """
    known = set(KNOWN_PROVIDERS) | set(PROVIDER_REGISTRY)
    if known_providers is not None:
        known |= set(known_providers)

    prefix, sep, model = model_id.partition(":")
    if sep and prefix in known:
        return prefix, model
    return None, model_id


class ProviderRegistry:
    """Resolves provider ids to adapter instances.

    Instances are cached per (provider, model). Any BaseProvider can be
    registered explicitly, which takes precedence over the built-in
    adapters (used for custom backends and tests).
    """

    def __init__(
        self,
        provider_settings: dict[str, dict] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._provider_settings = {provider_key(k): dict(v) for k, v in (provider_settings or {}).items()}
        self._transport = transport
        self._registered: dict[str, BaseProvider] = {}
        self._instances: dict[tuple[str, str], BaseProvider] = {}

    @classmethod
    def from_settings(cls, config, transport: httpx.AsyncBaseTransport | None = None) -> ProviderRegistry:
        provider_settings: dict[str, dict] = {
            "openai": {
                "api_key": config.openai_api_key,
                "base_url": config.openai_base_url,
                "timeout": config.provider_timeout_seconds,
            },
        }
        if config.ollama_base_url:
            provider_settings["ollama"] = {
                "base_url": config.ollama_base_url,
                "timeout": config.provider_timeout_seconds,
            }
        return cls(provider_settings, transport=transport)

    def register(self, name: str, provider: BaseProvider) -> None:
        name = provider_key(name)
        self._registered[name] = provider
        self._instances = {k: v for k, v in self._instances.items() if k[0] != name}
        logger.info("Registered provider %s (%s)", name, type(provider).__name__)

    def known_providers(self) -> set[str]:
        return set(PROVIDER_REGISTRY) | set(self._registered)

    def is_configured(self, name: str) -> bool:
        name = provider_key(name)
        if name in self._registered:
            return True
        cls = PROVIDER_REGISTRY.get(name)
        settings = self._provider_settings.get(name)
        if cls is None or settings is None:
            return False
        return bool(settings.get("api_key")) or not cls.requires_api_key

    def configured_providers(self) -> list[str]:
        return sorted(name for name in self.known_providers() if self.is_configured(name))

    def resolve(self, name: str, model: str | None = None) -> BaseProvider:
        """Return the adapter for a provider (and model), building it on first use."""
        name = provider_key(name)
        if name in self._registered:
            return self._registered[name]

        if not self.is_configured(name):
            if name in PROVIDER_REGISTRY:
                raise ProviderNotConfiguredError(name, f"Provider {name} is not configured (missing credentials)")
            raise ProviderNotConfiguredError(name)

        key = (name, model or "")
        if key not in self._instances:
            kwargs = dict(self._provider_settings[name])
            if model:
                kwargs["model"] = model
            self._instances[key] = get_provider(name, transport=self._transport, **kwargs)
        return self._instances[key]
