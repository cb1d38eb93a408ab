"""Dispatcher: orchestrator composing the resilience components.

Main entry point for completions:
  1. Cache lookup (hit → return immediately, no provider interaction)
  2. Circuit check (open → CircuitOpenError, no network call)
  3. Rate-limit check (denied → queued in the RequestManager, DEFERRED)
  4. Provider call, streamed, bound to a CancellationToken
  5. Feedback: cache store, circuit success/failure, metrics

Usage:
    async with Dispatcher() as dispatcher:
        response = await dispatcher.complete(
            CompletionRequest(messages=[Message("user", "Hello")], model="openai:gpt-4o-mini")
        )

    # Or handle deferral explicitly
    response = await dispatcher.get_completion(request)
    if response.deferred:
        response = await response.pending
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import time
from collections.abc import Callable

from llm_dispatch.core.config import Settings, settings
from llm_dispatch.core.events import EventBus, EventSink
from llm_dispatch.core.scheduler import PeriodicTask
from llm_dispatch.gateway.cache_manager import CacheManager
from llm_dispatch.gateway.circuit_breaker import CircuitBreaker, CircuitState
from llm_dispatch.gateway.errors import (
    CircuitOpenError,
    DispatchError,
    ProviderError,
    ProviderNotConfiguredError,
    QueueFullError,
    RateLimitExceededError,
    RequestAbortedError,
)
from llm_dispatch.gateway.metrics_collector import MetricsCollector
from llm_dispatch.gateway.providers import PROVIDER_REGISTRY, BaseProvider, ProviderRegistry, parse_unified_model
from llm_dispatch.gateway.rate_limiter import RateLimiter
from llm_dispatch.gateway.request_manager import RequestManager
from llm_dispatch.gateway.types import (
    DEFAULT_PROVIDER_LIMITS,
    CancellationToken,
    CircuitBreakerConfig,
    CompletionOptions,
    CompletionRequest,
    CompletionResponse,
    ConnectionResult,
    ProviderLimits,
    QueuedRequest,
    RequestStatus,
    provider_key,
)

logger = logging.getLogger(__name__)


def _limits_from_settings(config: Settings) -> dict[str, ProviderLimits]:
    limits = dict(DEFAULT_PROVIDER_LIMITS)
    for provider, override in config.rate_limits.items():
        limits[provider_key(provider)] = ProviderLimits(**override.model_dump())
    return limits


def _circuit_config_from_settings(config: Settings) -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=config.circuit_failure_threshold,
        timeout_seconds=config.circuit_timeout_seconds,
        monitoring_period_seconds=config.circuit_monitoring_period_seconds,
        half_open_max_calls=config.circuit_half_open_max_calls,
    )


class Dispatcher:
    """Resilient completion dispatcher.

    Integrates:
      - CacheManager: response cache (TTL + LRU)
      - CircuitBreaker: per-provider failure gate
      - RateLimiter: per-provider admission control
      - RequestManager: priority queue for rate-limited requests
      - MetricsCollector: request/cache telemetry
      - ProviderRegistry: provider id / unified model id → adapter
    """

    def __init__(
        self,
        providers: ProviderRegistry | None = None,
        events: EventSink | None = None,
        config: Settings | None = None,
        clock: Callable[[], float] | None = None,
    ):
        """
        Args:
            providers: Adapter registry (defaults to one built from config)
            events: Event sink shared by every component (defaults to an EventBus)
            config: Settings snapshot (defaults to the module-level settings)
            clock: Time source in epoch seconds, injectable for tests
        """
        self.config = config or settings
        self._clock = clock or time.time
        self.events = events if events is not None else EventBus(clock=self._clock)
        self.providers = providers or ProviderRegistry.from_settings(self.config)

        self.cache = CacheManager(
            self.events,
            max_size=self.config.cache_max_size,
            default_ttl=self.config.cache_default_ttl_seconds,
            clock=self._clock,
        )
        self.rate_limiter = RateLimiter(self.events, _limits_from_settings(self.config), clock=self._clock)
        self.circuit_breaker = CircuitBreaker(
            self.events, _circuit_config_from_settings(self.config), clock=self._clock
        )
        self.metrics = MetricsCollector(self.events, max_samples=self.config.metrics_max_samples, clock=self._clock)
        self.requests = RequestManager(
            self.events,
            max_queue_size=self.config.queue_max_size,
            processor=self._process_queued,
            clock=self._clock,
        )

        self.selected_model = self.config.selected_model
        self._active: dict[str, CancellationToken] = {}
        self._queued_tokens: dict[str, CancellationToken] = {}
        self._tasks: list[PeriodicTask] = []

    # -- Lifecycle ------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start periodic maintenance on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            PeriodicTask("cache-sweep", self.config.cache_sweep_interval_seconds, self.cache.cleanup_expired),
            PeriodicTask(
                "circuit-maintenance",
                self.config.circuit_maintenance_interval_seconds,
                self.circuit_breaker.perform_maintenance,
            ),
            PeriodicTask(
                "rate-limit-cleanup",
                self.config.rate_limit_cleanup_interval_seconds,
                self.rate_limiter.cleanup_expired,
            ),
            PeriodicTask("metrics-report", self.config.metrics_report_interval_seconds, self.report),
            PeriodicTask("queue-drain", self.config.queue_drain_interval_seconds, self.requests.process_queue),
        ]
        for task in self._tasks:
            task.start()
        logger.info("Dispatcher started (%d maintenance tasks)", len(self._tasks))

    async def stop(self) -> None:
        """Stop maintenance, cancel in-flight streams and reject queued requests."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            await task.stop()
        self.abort_all_streams()
        if tasks:
            logger.info("Dispatcher stopped")

    async def __aenter__(self) -> Dispatcher:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def apply_settings(self, config: Settings) -> None:
        """Hot-reconfigure every component from a new settings snapshot."""
        self.cache.configure(max_size=config.cache_max_size, default_ttl=config.cache_default_ttl_seconds)
        for provider, limits in _limits_from_settings(config).items():
            if limits != self.rate_limiter.get_limits(provider):
                self.rate_limiter.update_provider_limits(provider, limits)
        self.circuit_breaker.update_default_config(**_circuit_config_from_settings(config).to_dict())
        self.requests.configure(config.queue_max_size)

        intervals = {
            "cache-sweep": config.cache_sweep_interval_seconds,
            "circuit-maintenance": config.circuit_maintenance_interval_seconds,
            "rate-limit-cleanup": config.rate_limit_cleanup_interval_seconds,
            "metrics-report": config.metrics_report_interval_seconds,
            "queue-drain": config.queue_drain_interval_seconds,
        }
        for task in self._tasks:
            task.interval = intervals[task.name]

        if config.selected_model != self.config.selected_model:
            self.selected_model = config.selected_model
        self.config = config
        logger.info("Dispatcher settings applied")

    # -- Routing --------------------------------------------------------------

    def resolve_target(self, request: CompletionRequest) -> tuple[str, str | None]:
        """Pick (provider, model) for a request.

        Explicit provider, then a unified "provider:model" model id, then
        the selected model, then the default provider.
        """
        known = self.providers.known_providers()
        provider: str | None = None
        model = request.model or None

        if model:
            prefix, name = parse_unified_model(model, known)
            if prefix is not None:
                provider, model = prefix, name
        if request.provider:
            provider = provider_key(request.provider)

        if provider is None and self.selected_model:
            prefix, name = parse_unified_model(self.selected_model, known)
            if prefix is not None:
                provider = prefix
                model = model or name

        return provider or self.config.default_provider, model

    @staticmethod
    def cache_key(request: CompletionRequest, provider: str, model: str | None) -> str:
        """SHA-256 over the canonical JSON of messages, temperature and target."""
        canonical = json.dumps(
            {
                "messages": [m.to_dict() for m in request.messages],
                "temperature": request.options.temperature,
                "provider": provider,
                "model": model or "",
            },
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    # -- Completions ----------------------------------------------------------

    async def get_completion(
        self,
        request: CompletionRequest,
        *,
        cancel_token: CancellationToken | None = None,
        allow_defer: bool = True,
    ) -> CompletionResponse:
        """Run a request through admission control and the provider.

        Returns a SUCCESS or CACHED response, or a DEFERRED one whose
        `pending` future resolves once the queued request is processed.

        Raises:
            CircuitOpenError: provider circuit is open (no network call made)
            RateLimitExceededError: rate-limited and allow_defer is False
            QueueFullError: rate-limited and the queue is at capacity
            ProviderNotConfiguredError: provider id cannot be resolved
            ProviderError: the provider call failed
            RequestAbortedError: cancelled through cancel_token / abort_stream
        """
        provider, model = self.resolve_target(request)
        key = self.cache_key(request, provider, model)

        cached = await self._from_cache(request, provider, model, key)
        if cached is not None:
            return cached

        self._ensure_circuit_allows(request, provider)

        if not self.rate_limiter.check_limit(provider):
            # The queued run takes its own probe slot
            self.circuit_breaker.release(provider)
            retry_after = self.rate_limiter.time_until_available(provider)
            if not allow_defer:
                self._publish_rejected(request, provider, "rate_limited")
                raise RateLimitExceededError(provider, retry_after)
            return self._defer(request, provider, model, cancel_token, retry_after)

        return await self._execute(request, provider, model, key, cancel_token)

    async def complete(self, request: CompletionRequest, **kwargs) -> CompletionResponse:
        """Like get_completion, but waits out a deferral."""
        response = await self.get_completion(request, **kwargs)
        if response.deferred:
            return await response.pending
        return response

    async def _from_cache(
        self, request: CompletionRequest, provider: str, model: str | None, key: str
    ) -> CompletionResponse | None:
        content = self.cache.get(key)
        if content is None:
            self.metrics.record_cache_miss(key)
            return None

        self.metrics.record_cache_hit(key)
        await self._emit_chunk(request.options, content)
        self.events.publish(
            "dispatch.request.completed",
            {"request_id": request.request_id, "provider": provider, "cached": True, "duration_ms": 0},
        )
        logger.debug("Cache hit for request %s (%s)", request.request_id, provider)
        return CompletionResponse(
            content=content,
            provider=provider,
            model=model or "",
            duration_ms=0,
            status=RequestStatus.CACHED,
            request_id=request.request_id,
        )

    def _ensure_circuit_allows(self, request: CompletionRequest, provider: str) -> None:
        if self.circuit_breaker.allow_request(provider):
            return
        next_retry_at = self.circuit_breaker.get_state(provider)["next_retry_time"]
        self._publish_rejected(request, provider, "circuit_open")
        raise CircuitOpenError(provider, next_retry_at)

    def _defer(
        self,
        request: CompletionRequest,
        provider: str,
        model: str | None,
        cancel_token: CancellationToken | None,
        retry_after: float,
    ) -> CompletionResponse:
        queued = QueuedRequest(request=request, provider=provider, priority=request.priority, model=model)
        token = cancel_token or CancellationToken()
        try:
            future = self.requests.queue_request(queued)
        except QueueFullError:
            self._publish_rejected(request, provider, "queue_full")
            raise

        self._queued_tokens[request.request_id] = token
        self.metrics.set_gauge("dispatch_queue_length", len(self.requests))
        self.events.publish(
            "dispatch.request.deferred",
            {
                "request_id": request.request_id,
                "provider": provider,
                "retry_after": retry_after,
                "queue_length": len(self.requests),
            },
        )
        logger.info(
            "Request %s deferred: %s rate-limited (retry in %.1fs)", request.request_id, provider, retry_after
        )
        return CompletionResponse(
            provider=provider,
            model=model or "",
            status=RequestStatus.DEFERRED,
            request_id=request.request_id,
            pending=future,
        )

    async def _process_queued(self, queued: QueuedRequest) -> CompletionResponse:
        """RequestManager processor: wait for admission, then execute."""
        request = queued.request
        provider = queued.provider
        token = self._queued_tokens.get(request.request_id) or CancellationToken()
        poll = self.config.queue_poll_interval_seconds
        try:
            while not self.rate_limiter.check_limit(provider):
                token.raise_if_cancelled()
                wait = self.rate_limiter.time_until_available(provider)
                try:
                    await asyncio.wait_for(token.wait(), timeout=min(wait, poll) or poll)
                except asyncio.TimeoutError:
                    continue
            token.raise_if_cancelled()

            key = self.cache_key(request, provider, queued.model)
            cached = await self._from_cache(request, provider, queued.model, key)
            if cached is not None:
                return cached

            self._ensure_circuit_allows(request, provider)
            return await self._execute(request, provider, queued.model, key, token)
        finally:
            self._queued_tokens.pop(request.request_id, None)

    async def _execute(
        self,
        request: CompletionRequest,
        provider: str,
        model: str | None,
        key: str,
        cancel_token: CancellationToken | None,
    ) -> CompletionResponse:
        try:
            adapter = self.providers.resolve(provider, model)
        except ProviderNotConfiguredError as e:
            self.circuit_breaker.release(provider)
            self.metrics.record_request(provider, 0, False)
            self._publish_failed(request, provider, e, 0)
            raise

        token = cancel_token or CancellationToken()
        self._active[request.request_id] = token
        start = time.monotonic()

        try:
            token.raise_if_cancelled()
            self.rate_limiter.record_request(provider)
            content = await self._stream(adapter, request, token)
        except (RequestAbortedError, asyncio.CancelledError):
            self.circuit_breaker.release(provider)
            duration_ms = int((time.monotonic() - start) * 1000)
            self.metrics.record_request(provider, duration_ms, False)
            self.events.publish(
                "dispatch.request.aborted",
                {"request_id": request.request_id, "provider": provider, "duration_ms": duration_ms},
            )
            logger.info("Request %s to %s aborted by caller", request.request_id, provider)
            raise
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.circuit_breaker.record_failure(provider)
            self.metrics.record_request(provider, duration_ms, False)
            self._publish_failed(request, provider, e, duration_ms)
            logger.warning("Request %s to %s failed after %dms: %s", request.request_id, provider, duration_ms, e)
            raise
        finally:
            self._active.pop(request.request_id, None)

        duration_ms = int((time.monotonic() - start) * 1000)
        self.circuit_breaker.record_success(provider)
        self.metrics.record_request(provider, duration_ms, True)
        self.cache.set(key, content)
        self.events.publish(
            "dispatch.request.completed",
            {
                "request_id": request.request_id,
                "provider": provider,
                "model": adapter.model,
                "cached": False,
                "duration_ms": duration_ms,
                "content_length": len(content),
            },
        )
        return CompletionResponse(
            content=content,
            provider=provider,
            model=adapter.model,
            duration_ms=duration_ms,
            status=RequestStatus.SUCCESS,
            request_id=request.request_id,
        )

    async def _stream(self, adapter: BaseProvider, request: CompletionRequest, token: CancellationToken) -> str:
        """Accumulate the streamed completion, racing it against cancellation."""

        async def consume() -> str:
            parts: list[str] = []
            async for chunk in adapter.get_completion(request.messages, request.options, token):
                token.raise_if_cancelled()
                parts.append(chunk)
                await self._emit_chunk(request.options, chunk)
            return "".join(parts)

        consumer = asyncio.ensure_future(consume())
        waiter = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not consumer.done():
                consumer.cancel()
                try:
                    await consumer
                except (asyncio.CancelledError, RequestAbortedError):
                    pass

        if consumer in done:
            return consumer.result()
        raise RequestAbortedError(token.reason or "Request aborted")

    @staticmethod
    async def _emit_chunk(options: CompletionOptions, chunk: str) -> None:
        if options.stream_callback is None:
            return
        result = options.stream_callback(chunk)
        if inspect.isawaitable(result):
            await result

    def _publish_rejected(self, request: CompletionRequest, provider: str, reason: str) -> None:
        self.events.publish(
            "dispatch.request.rejected",
            {"request_id": request.request_id, "provider": provider, "reason": reason},
        )

    def _publish_failed(self, request: CompletionRequest, provider: str, error: Exception, duration_ms: int) -> None:
        payload = {
            "request_id": request.request_id,
            "provider": provider,
            "error": str(error),
            "error_class": type(error).__name__,
            "duration_ms": duration_ms,
        }
        if isinstance(error, ProviderError):
            payload["error_type"] = error.error_type.value
            payload["status_code"] = error.status_code
        self.events.publish("dispatch.request.failed", payload)

    # -- Cancellation ---------------------------------------------------------

    def abort_stream(self, request_id: str, reason: str = "Request aborted") -> bool:
        """Cancel an in-flight or queued request. Returns True if one was found."""
        token = self._active.get(request_id)
        if token is not None:
            token.cancel(reason)
            return True

        queued_token = self._queued_tokens.pop(request_id, None)
        if queued_token is not None:
            queued_token.cancel(reason)
        # A dequeued request still waiting for its window is only reachable by token
        return self.requests.abort_request(request_id) or queued_token is not None

    def abort_all_streams(self) -> int:
        """Cancel every in-flight stream and reject every queued request."""
        in_flight = dict(self._active)
        waiting = {rid: t for rid, t in self._queued_tokens.items() if rid not in in_flight}
        for token in [*in_flight.values(), *waiting.values()]:
            token.cancel("All requests aborted")
        self._queued_tokens.clear()
        self.requests.abort_all_requests()

        self.events.publish("dispatch.streams.aborted_all", {"in_flight": len(in_flight), "queued": len(waiting)})
        return len(in_flight) + len(waiting)

    # -- Providers & models ---------------------------------------------------

    async def test_connection(self, provider: str) -> ConnectionResult:
        provider = provider_key(provider)
        try:
            result = await self.providers.resolve(provider).test_connection()
        except DispatchError as e:
            result = ConnectionResult(False, str(e))

        self.events.publish("dispatch.connection.tested", {"provider": provider, **result.to_dict()})
        log = logger.info if result.success else logger.warning
        log("Connection test for %s: %s", provider, result.message)
        return result

    async def get_available_models(self, provider: str) -> list[str]:
        """Model ids offered by a provider; empty when it cannot be reached."""
        provider = provider_key(provider)
        try:
            models = await self.providers.resolve(provider).get_available_models()
        except DispatchError as e:
            self.events.publish("dispatch.models.fetch_failed", {"provider": provider, "error": str(e)})
            logger.warning("Could not fetch models for %s: %s", provider, e)
            return []

        self.events.publish("dispatch.models.fetched", {"provider": provider, "count": len(models)})
        return models

    async def get_all_unified_models(self) -> list[str]:
        """Unified "provider:model" ids across every configured provider."""
        providers = self.get_configured_providers()
        results = await asyncio.gather(*(self.get_available_models(p) for p in providers))
        return [f"{provider}:{model}" for provider, models in zip(providers, results) for model in models]

    def set_selected_model(self, model_id: str) -> None:
        provider, model = parse_unified_model(model_id, self.providers.known_providers())
        if provider is None or not model:
            raise ValueError(f"Model id must look like 'provider:model' (got {model_id!r})")
        self.selected_model = model_id
        self.events.publish("dispatch.model.selected", {"provider": provider, "model": model})
        logger.info("Selected model %s", model_id)

    def get_current_model(self) -> str:
        """The selected unified model id, or the default provider's default model."""
        if self.selected_model:
            return self.selected_model
        provider = self.config.default_provider
        cls = PROVIDER_REGISTRY.get(provider)
        return f"{provider}:{cls.default_model}" if cls else provider

    def is_provider_configured(self, provider: str) -> bool:
        return self.providers.is_configured(provider)

    def get_configured_providers(self) -> list[str]:
        return self.providers.configured_providers()

    # -- Telemetry ------------------------------------------------------------

    def report(self) -> dict:
        """Refresh gauges and emit the periodic metrics summary."""
        circuits = self.circuit_breaker.get_all_stats()
        self.metrics.set_gauge("dispatch_queue_length", len(self.requests))
        self.metrics.set_gauge("dispatch_cache_size", len(self.cache))
        self.metrics.set_gauge(
            "dispatch_open_circuits",
            sum(1 for c in circuits.values() if c["state"] != CircuitState.CLOSED.value),
        )
        return self.metrics.report()

    def get_stats(self) -> dict:
        return {
            "queue": self.requests.get_queue_stats(),
            "cache": self.cache.get_stats(),
            "rate_limits": self.rate_limiter.get_provider_limits(),
            "circuits": self.circuit_breaker.get_all_stats(),
            "metrics": self.metrics.get_metrics(),
            "active_streams": len(self._active),
            "selected_model": self.get_current_model(),
            "configured_providers": self.get_configured_providers(),
        }
