"""Exceptions raised by the dispatch layer.

Deferred and rejected outcomes are distinct types so callers can decide
whether to retry, wait, or tell the user a provider is degraded:

  - QueueFullError: rejected immediately, nothing was queued
  - RateLimitExceededError: caller opted out of deferral
  - CircuitOpenError: provider temporarily unavailable, no network call made
  - ProviderError: the provider call itself failed (classified)
  - RequestAbortedError: caller cancelled; never counted as a provider failure
"""

from __future__ import annotations

from enum import Enum


class DispatchError(Exception):
    """Base exception for the dispatch layer."""


class QueueFullError(DispatchError):
    """Raised when the request queue is at capacity."""

    def __init__(self, queue_size: int, max_size: int):
        self.queue_size = queue_size
        self.max_size = max_size
        super().__init__(f"Request queue is full ({queue_size}/{max_size}). Please try again later.")


class RateLimitExceededError(DispatchError):
    """Raised when a provider is rate-limited and the caller disallowed queueing."""

    def __init__(self, provider: str, retry_after: float = 0.0):
        self.provider = provider
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for provider {provider} (retry in {retry_after:.1f}s)")


class CircuitOpenError(DispatchError):
    """Raised when the circuit breaker for a provider is open (ProviderUnavailable)."""

    def __init__(self, provider: str, next_retry_at: float = 0.0):
        self.provider = provider
        self.next_retry_at = next_retry_at
        super().__init__(f"Provider {provider} is temporarily unavailable (circuit breaker open)")


class ProviderErrorType(str, Enum):
    """Common failure classes across providers."""

    INVALID_API_KEY = "invalid_api_key"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"


class ProviderError(DispatchError):
    """Raised by provider adapters; keeps its classification through the dispatcher."""

    def __init__(
        self,
        error_type: ProviderErrorType,
        message: str,
        provider: str = "",
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.status_code = status_code

    @classmethod
    def from_status(cls, status_code: int, body: str = "", provider: str = "") -> ProviderError:
        """Map an HTTP status code to a classified ProviderError."""
        detail = body.strip()[:500]
        if status_code in (401, 403):
            error_type = ProviderErrorType.INVALID_API_KEY
            message = "Invalid API key or insufficient permissions"
        elif status_code == 429:
            error_type = ProviderErrorType.RATE_LIMIT
            message = "Rate limit exceeded"
        elif 400 <= status_code < 500:
            error_type = ProviderErrorType.INVALID_REQUEST
            message = "Invalid request"
        else:
            error_type = ProviderErrorType.SERVER_ERROR
            message = "Provider server error"

        if detail:
            message = f"{message}: {detail}"
        return cls(error_type, f"[{status_code}] {message}", provider=provider, status_code=status_code)


class ProviderNotConfiguredError(DispatchError):
    """Raised when a provider id cannot be resolved to a provider instance."""

    def __init__(self, provider: str, reason: str = ""):
        self.provider = provider
        super().__init__(reason or f"No provider configured for '{provider}'")


class RequestAbortedError(DispatchError):
    """Raised when the caller cancels a request (queued or in flight)."""


class CacheImportError(DispatchError):
    """Raised when a cache snapshot cannot be parsed."""
