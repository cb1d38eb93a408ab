"""Rate Limiter: per-provider fixed-window admission control with burst guard.

Each provider has a static ProviderLimits config (max_requests per
window_seconds, optional burst_limit per second). Windows are created
lazily on the first recorded request and reset once expired.

Unknown providers are allowed (fail-open) but flagged with a
"rate_limit.unknown_provider" event.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from llm_dispatch.core.events import EventSink, NullEventSink
from llm_dispatch.gateway.types import DEFAULT_PROVIDER_LIMITS, ProviderLimits, provider_key

logger = logging.getLogger(__name__)

BURST_WINDOW_SECONDS = 1.0


@dataclass
class _RateLimitWindow:
    """Request counters for a single provider's current window."""

    provider: str
    request_count: int = 0
    window_reset_at: float = 0.0
    window_started_at: float = 0.0
    burst_count: int = 0
    last_request_at: float = 0.0

    def expired(self, now: float) -> bool:
        return now > self.window_reset_at

    def in_burst(self, now: float) -> bool:
        return now - self.last_request_at < BURST_WINDOW_SECONDS


class RateLimiter:
    """Per-provider rate limiter.

    Usage:
        limiter = RateLimiter(events=bus)

        if limiter.check_limit("openai"):
            limiter.record_request("openai")
            ...  # call the provider
        else:
            ...  # defer the request
    """

    def __init__(
        self,
        events: EventSink | None = None,
        limits: dict[str, ProviderLimits] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self._events = events or NullEventSink()
        self._clock = clock or time.time
        source = DEFAULT_PROVIDER_LIMITS if limits is None else limits
        self._provider_limits: dict[str, ProviderLimits] = {
            provider_key(p): ProviderLimits(**cfg.to_dict()) for p, cfg in source.items()
        }
        self._windows: dict[str, _RateLimitWindow] = {}

    def check_limit(self, provider: str) -> bool:
        """Return True if a request to provider may proceed now."""
        provider = provider_key(provider)
        config = self._provider_limits.get(provider)
        now = self._clock()

        if config is None:
            self._events.publish("rate_limit.unknown_provider", {"provider": provider, "timestamp": now})
            return True

        window = self._windows.get(provider)
        if window is None or window.expired(now):
            return True

        if config.burst_limit and window.burst_count >= config.burst_limit and window.in_burst(now):
            self._events.publish(
                "rate_limit.burst_exceeded",
                {
                    "provider": provider,
                    "burst_count": window.burst_count,
                    "burst_limit": config.burst_limit,
                    "timestamp": now,
                },
            )
            logger.debug("Burst limit hit for %s (%d/s)", provider, window.burst_count)
            return False

        if window.request_count >= config.max_requests:
            self._events.publish(
                "rate_limit.exceeded",
                {
                    "provider": provider,
                    "requests": window.request_count,
                    "max_requests": config.max_requests,
                    "reset_at": window.window_reset_at,
                    "timestamp": now,
                },
            )
            logger.debug(
                "Rate limit hit for %s (%d/%d)", provider, window.request_count, config.max_requests
            )
            return False

        return True

    def record_request(self, provider: str) -> None:
        """Count an outgoing request against the provider's window."""
        provider = provider_key(provider)
        config = self._provider_limits.get(provider)
        now = self._clock()

        if config is None:
            self._events.publish("rate_limit.unknown_provider", {"provider": provider, "timestamp": now})
            return

        window = self._windows.get(provider)
        if window is None or window.expired(now):
            window = _RateLimitWindow(
                provider=provider,
                window_reset_at=now + config.window_seconds,
                window_started_at=now,
            )
            self._windows[provider] = window

        if window.burst_count and window.in_burst(now):
            window.burst_count += 1
        else:
            window.burst_count = 1

        window.request_count += 1
        window.last_request_at = now

        if window.request_count > config.max_requests:
            # Admission was bypassed; surface the violation rather than hiding it
            logger.warning(
                "Provider %s exceeded its window: %d/%d requests",
                provider,
                window.request_count,
                config.max_requests,
            )
            self._events.publish(
                "rate_limit.exceeded",
                {
                    "provider": provider,
                    "requests": window.request_count,
                    "max_requests": config.max_requests,
                    "reset_at": window.window_reset_at,
                    "timestamp": now,
                },
            )

        self._events.publish(
            "rate_limit.request_recorded",
            {
                "provider": provider,
                "requests": window.request_count,
                "max_requests": config.max_requests,
                "remaining": max(0, config.max_requests - window.request_count),
                "reset_at": window.window_reset_at,
                "timestamp": now,
            },
        )

    def get_remaining(self, provider: str) -> int | None:
        """Requests left in the current window. None means unlimited (unknown provider)."""
        provider = provider_key(provider)
        config = self._provider_limits.get(provider)
        if config is None:
            return None

        window = self._windows.get(provider)
        if window is None or window.expired(self._clock()):
            return config.max_requests
        return max(0, config.max_requests - window.request_count)

    def time_until_available(self, provider: str) -> float:
        """Seconds until check_limit could next succeed (0 if it would now)."""
        provider = provider_key(provider)
        config = self._provider_limits.get(provider)
        window = self._windows.get(provider)
        now = self._clock()
        if config is None or window is None or window.expired(now):
            return 0.0

        waits = []
        if window.request_count >= config.max_requests:
            # Windows reset strictly after window_reset_at
            waits.append(window.window_reset_at - now + 0.001)
        if config.burst_limit and window.burst_count >= config.burst_limit and window.in_burst(now):
            waits.append(window.last_request_at + BURST_WINDOW_SECONDS - now)
        return max(max(waits, default=0.0), 0.0)

    def reset_limits(self, provider: str | None = None) -> None:
        """Forget the current window for one provider, or for all."""
        if provider is not None:
            provider = provider_key(provider)
            self._windows.pop(provider, None)
            self._events.publish("rate_limit.reset", {"provider": provider})
            return

        count = len(self._windows)
        self._windows.clear()
        self._events.publish("rate_limit.reset_all", {"reset_count": count})

    def update_provider_limits(self, provider: str, limits: ProviderLimits) -> None:
        """Hot-reconfigure a provider's limits (also registers new providers)."""
        provider = provider_key(provider)
        self._provider_limits[provider] = limits
        self._events.publish("rate_limit.config_updated", {"provider": provider, "limits": limits.to_dict()})
        logger.info(
            "Rate limits for %s set to %d per %.0fs (burst %s)",
            provider,
            limits.max_requests,
            limits.window_seconds,
            limits.burst_limit,
        )

    def get_limits(self, provider: str) -> ProviderLimits | None:
        return self._provider_limits.get(provider_key(provider))

    def get_provider_limits(self) -> dict[str, dict]:
        """Current window info for every configured provider."""
        now = self._clock()
        result: dict[str, dict] = {}
        for provider, config in self._provider_limits.items():
            window = self._windows.get(provider)
            if window is None or window.expired(now):
                result[provider] = {
                    "requests": 0,
                    "max_requests": config.max_requests,
                    "reset_at": now + config.window_seconds,
                    "remaining": config.max_requests,
                }
            else:
                result[provider] = {
                    "requests": window.request_count,
                    "max_requests": config.max_requests,
                    "reset_at": window.window_reset_at,
                    "remaining": max(0, config.max_requests - window.request_count),
                }
        return result

    def get_detailed_stats(self) -> dict:
        now = self._clock()
        current = self.get_provider_limits()
        providers: dict[str, dict] = {}
        total_requests = 0
        active_providers = 0

        for provider, config in self._provider_limits.items():
            window = self._windows.get(provider)
            burst_count = 0
            average_rate = 0.0
            if window is not None and not window.expired(now):
                burst_count = window.burst_count
                elapsed = now - window.window_started_at
                if elapsed > 0:
                    average_rate = window.request_count / elapsed  # requests per second
                if window.request_count > 0:
                    active_providers += 1

            total_requests += current[provider]["requests"]
            providers[provider] = {
                "config": config.to_dict(),
                "current": current[provider],
                "burst_count": burst_count,
                "average_request_rate": round(average_rate, 2),
            }

        return {
            "providers": providers,
            "total_requests": total_requests,
            "active_providers": active_providers,
        }

    def cleanup_expired(self) -> int:
        """Periodic sweep: drop expired windows. Returns count removed."""
        now = self._clock()
        expired = [p for p, w in self._windows.items() if w.expired(now)]
        for provider in expired:
            del self._windows[provider]
        if expired:
            self._events.publish(
                "rate_limit.cleanup",
                {"expired_count": len(expired), "providers": expired, "timestamp": now},
            )
        return len(expired)
