"""Core types and DTOs for the dispatch layer."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from llm_dispatch.gateway.errors import RequestAbortedError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderName(str, Enum):
    """Providers known at startup. Any other string id is accepted too."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"


class RequestStatus(str, Enum):
    """How a completion was produced."""

    SUCCESS = "success"  # Provider was called
    CACHED = "cached"  # Served from the response cache
    DEFERRED = "deferred"  # Rate-limited, waiting in the request queue


class RequestPriority(int, Enum):
    """Queue priority levels (higher = served first). Plain ints are accepted too."""

    LOW = 0
    NORMAL = 5
    HIGH = 10
    CRITICAL = 20


def provider_key(provider: str | ProviderName) -> str:
    """Normalize a provider id (enum or string) to its plain string key."""
    if isinstance(provider, ProviderName):
        return provider.value
    return str(provider)


# ---------------------------------------------------------------------------
# Messages & requests
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single chat message."""

    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(role=data["role"], content=data["content"])


@dataclass
class CompletionOptions:
    """Per-request generation options."""

    temperature: float = 0.7
    max_tokens: int | None = None
    # Called with every streamed chunk (or once with the cached content)
    stream_callback: Callable[[str], Any] | None = None
    # Provider-specific overrides passed through untouched
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionRequest:
    """A completion request handed to the Dispatcher."""

    messages: list[Message] = field(default_factory=list)
    options: CompletionOptions = field(default_factory=CompletionOptions)
    provider: str | None = None  # Explicit provider id wins over model prefix
    model: str | None = None  # Plain model name or unified "provider:model" id
    priority: int = RequestPriority.NORMAL
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


@dataclass
class CompletionResponse:
    """Unified result of Dispatcher.get_completion."""

    content: str = ""
    provider: str = ""
    model: str = ""
    duration_ms: int = 0
    status: RequestStatus = RequestStatus.SUCCESS
    request_id: str = ""
    # Set only for DEFERRED responses; resolves to the final CompletionResponse
    pending: asyncio.Future | None = field(default=None, repr=False, compare=False)

    @property
    def deferred(self) -> bool:
        return self.status == RequestStatus.DEFERRED

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for logging/API."""
        return {
            "request_id": self.request_id,
            "content": self.content,
            "provider": self.provider,
            "model": self.model,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
        }


@dataclass
class QueuedRequest:
    """A request parked in the RequestManager until admission control allows it."""

    request: CompletionRequest
    provider: str
    priority: int = RequestPriority.NORMAL
    model: str | None = None
    id: str = ""
    enqueued_at: float = 0.0
    future: asyncio.Future | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = self.request.request_id

    @property
    def messages(self) -> list[Message]:
        return self.request.messages

    @property
    def options(self) -> CompletionOptions:
        return self.request.options


@dataclass
class ConnectionResult:
    """Outcome of Provider.test_connection."""

    success: bool
    message: str = ""
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "latency_ms": self.latency_ms}


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Caller-side cancellation handle passed down to the provider call.

    Cancelling is distinct from a provider failure: the Dispatcher never
    counts it against the circuit breaker.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Request aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestAbortedError(self.reason or "Request aborted")

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Component configs
# ---------------------------------------------------------------------------


@dataclass
class ProviderLimits:
    """Rate-limit configuration for a provider."""

    max_requests: int
    window_seconds: float = 60.0
    burst_limit: int | None = None  # Max requests within any 1-second burst

    def to_dict(self) -> dict:
        return {
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "burst_limit": self.burst_limit,
        }


# Default limits per provider
DEFAULT_PROVIDER_LIMITS: dict[str, ProviderLimits] = {
    ProviderName.OPENAI.value: ProviderLimits(max_requests=60, window_seconds=60.0, burst_limit=10),
    ProviderName.ANTHROPIC.value: ProviderLimits(max_requests=50, window_seconds=60.0, burst_limit=8),
    ProviderName.GEMINI.value: ProviderLimits(max_requests=60, window_seconds=60.0, burst_limit=10),
    ProviderName.OLLAMA.value: ProviderLimits(max_requests=100, window_seconds=60.0, burst_limit=20),  # Local
}


@dataclass
class CircuitBreakerConfig:
    """Thresholds for a provider's circuit."""

    failure_threshold: int = 5
    timeout_seconds: float = 30.0  # Open → half-open cool-down
    monitoring_period_seconds: float = 300.0  # Window for recent failure timestamps
    half_open_max_calls: int = 3  # Successful probes needed to close

    def to_dict(self) -> dict:
        return {
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout_seconds,
            "monitoring_period_seconds": self.monitoring_period_seconds,
            "half_open_max_calls": self.half_open_max_calls,
        }


# Circuits created at startup
KNOWN_PROVIDERS: tuple[str, ...] = tuple(p.value for p in ProviderName)
