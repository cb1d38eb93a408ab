"""Tests for the Dispatcher orchestrator (fake provider, fake clock)."""

from __future__ import annotations

import asyncio

import pytest

from llm_dispatch.core.config import ProviderLimitsConfig
from llm_dispatch.gateway.circuit_breaker import CircuitState
from llm_dispatch.gateway.dispatcher import Dispatcher
from llm_dispatch.gateway.errors import (
    CircuitOpenError,
    ProviderError,
    ProviderErrorType,
    ProviderNotConfiguredError,
    QueueFullError,
    RateLimitExceededError,
    RequestAbortedError,
)
from llm_dispatch.gateway.providers import ProviderRegistry
from llm_dispatch.gateway.types import CancellationToken, CompletionOptions, CompletionRequest, Message, RequestStatus

from tests.conftest import FakeProvider, make_request, make_settings


def _build(events, clock, provider=None, **overrides) -> tuple[Dispatcher, FakeProvider]:
    provider = provider or FakeProvider()
    registry = ProviderRegistry()
    registry.register("p1", provider)
    return Dispatcher(providers=registry, events=events, config=make_settings(**overrides), clock=clock), provider


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


# ==========================================================================
# Test: Admission path
# ==========================================================================


class TestDispatchFlow:
    @pytest.mark.asyncio
    async def test_rate_limited_call_is_deferred_then_admitted(self, dispatcher, fake_provider, clock, events):
        first = await dispatcher.get_completion(make_request("one"))
        second = await dispatcher.get_completion(make_request("two"))
        assert first.status == RequestStatus.SUCCESS
        assert second.content == "Hello, world"
        assert fake_provider.calls == 2

        third = await dispatcher.get_completion(make_request("three"))
        assert third.status == RequestStatus.DEFERRED
        assert third.deferred
        assert fake_provider.calls == 2
        assert not third.pending.done()
        assert events.of("dispatch.request.deferred")[0]["request_id"] == third.request_id

        clock.advance(1.1)  # window elapsed
        fourth = await dispatcher.get_completion(make_request("four"))
        assert fourth.status == RequestStatus.SUCCESS
        assert fake_provider.calls == 3

        assert await dispatcher.requests.process_queue() == 1
        resolved = await third.pending
        assert resolved.status == RequestStatus.SUCCESS
        assert resolved.content == "Hello, world"
        assert resolved.request_id == third.request_id
        assert fake_provider.calls == 4

    @pytest.mark.asyncio
    async def test_queued_request_waits_for_window(self, dispatcher, fake_provider, clock):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        deferred = await dispatcher.get_completion(make_request("three"))

        drain = asyncio.create_task(dispatcher.requests.process_queue())
        await asyncio.sleep(0.05)
        assert fake_provider.calls == 2
        assert not drain.done()

        clock.advance(1.1)
        assert await asyncio.wait_for(drain, timeout=1) == 1
        assert (await deferred.pending).status == RequestStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_complete_waits_out_deferral(self, dispatcher, clock):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))

        task = asyncio.create_task(dispatcher.complete(make_request("three")))
        await _wait_until(lambda: len(dispatcher.requests) == 1)
        clock.advance(1.1)
        await dispatcher.requests.process_queue()

        response = await task
        assert response.status == RequestStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_allow_defer_false_raises(self, dispatcher):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        with pytest.raises(RateLimitExceededError) as exc_info:
            await dispatcher.get_completion(make_request("three"), allow_defer=False)
        assert exc_info.value.provider == "p1"
        assert exc_info.value.retry_after > 0
        assert len(dispatcher.requests) == 0

    @pytest.mark.asyncio
    async def test_queue_full_surfaces(self, events, clock):
        dispatcher, _ = _build(events, clock, queue_max_size=1)
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        assert (await dispatcher.get_completion(make_request("three"))).deferred

        with pytest.raises(QueueFullError):
            await dispatcher.get_completion(make_request("four"))
        assert len(dispatcher.requests) == 1
        assert events.of("dispatch.request.rejected")[-1]["reason"] == "queue_full"


# ==========================================================================
# Test: Cache interaction
# ==========================================================================


class TestDispatchCache:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider_and_limits(self, dispatcher, fake_provider):
        await dispatcher.get_completion(make_request("same"))
        remaining = dispatcher.rate_limiter.get_remaining("p1")

        chunks: list[str] = []
        request = make_request("same", options=CompletionOptions(stream_callback=chunks.append))
        response = await dispatcher.get_completion(request)

        assert response.status == RequestStatus.CACHED
        assert response.content == "Hello, world"
        assert chunks == ["Hello, world"]
        assert fake_provider.calls == 1
        assert dispatcher.rate_limiter.get_remaining("p1") == remaining
        assert dispatcher.metrics.get_detailed_metrics()["cache_metrics"]["hits"] == 1

    @pytest.mark.asyncio
    async def test_cache_hit_bypasses_open_circuit(self, dispatcher):
        await dispatcher.get_completion(make_request("same"))
        for _ in range(5):
            dispatcher.circuit_breaker.record_failure("p1")
        response = await dispatcher.get_completion(make_request("same"))
        assert response.status == RequestStatus.CACHED

    def test_cache_key_canonicalization(self, dispatcher):
        base = make_request("hello")
        same = make_request("hello")
        warmer = make_request("hello", options=CompletionOptions(temperature=0.2))

        key = dispatcher.cache_key(base, "p1", None)
        assert key == dispatcher.cache_key(same, "p1", None)
        assert key != dispatcher.cache_key(warmer, "p1", None)
        assert key != dispatcher.cache_key(base, "p1", "other-model")
        assert key != dispatcher.cache_key(base, "p2", None)
        assert len(key) == 64

    @pytest.mark.asyncio
    async def test_stream_callback_receives_chunks(self, dispatcher):
        received: list[str] = []

        async def on_chunk(chunk: str) -> None:
            received.append(chunk)

        await dispatcher.get_completion(make_request("x", options=CompletionOptions(stream_callback=on_chunk)))
        assert received == ["Hello", ", world"]


# ==========================================================================
# Test: Failures, circuit and cancellation
# ==========================================================================


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, dispatcher, fake_provider, events):
        for _ in range(5):
            dispatcher.circuit_breaker.record_failure("p1")

        with pytest.raises(CircuitOpenError) as exc_info:
            await dispatcher.get_completion(make_request())
        assert exc_info.value.provider == "p1"
        assert fake_provider.calls == 0
        assert len(dispatcher.requests) == 0
        assert events.of("dispatch.request.rejected")[0]["reason"] == "circuit_open"

    @pytest.mark.asyncio
    async def test_provider_error_counts_against_circuit(self, events, clock):
        error = ProviderError(ProviderErrorType.SERVER_ERROR, "boom", provider="p1", status_code=500)
        dispatcher, provider = _build(events, clock, provider=FakeProvider(error=error, error_after=1))
        received: list[str] = []

        with pytest.raises(ProviderError) as exc_info:
            await dispatcher.get_completion(make_request(options=CompletionOptions(stream_callback=received.append)))

        assert exc_info.value.error_type == ProviderErrorType.SERVER_ERROR
        assert received == ["Hello"]  # partial stream reached the callback
        assert len(dispatcher.cache) == 0  # but was never cached
        assert dispatcher.circuit_breaker.get_state("p1")["failure_count"] == 1
        assert dispatcher.metrics.get_metrics()["failed_requests"] == 1
        assert events.of("dispatch.request.failed")[0]["error_type"] == "server_error"

    @pytest.mark.asyncio
    async def test_repeated_failures_open_circuit(self, events, clock):
        error = ProviderError(ProviderErrorType.NETWORK_ERROR, "down")
        dispatcher, provider = _build(
            events,
            clock,
            provider=FakeProvider(error=error),
            rate_limits={"p1": ProviderLimitsConfig(max_requests=100)},
        )
        for i in range(5):
            with pytest.raises(ProviderError):
                await dispatcher.get_completion(make_request(f"try {i}"))

        with pytest.raises(CircuitOpenError):
            await dispatcher.get_completion(make_request("after"))
        assert provider.calls == 5

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_circuit_failure(self, events, clock):
        gate = asyncio.Event()
        dispatcher, provider = _build(events, clock, provider=FakeProvider(gate=gate))
        token = CancellationToken()

        task = asyncio.create_task(dispatcher.get_completion(make_request(), cancel_token=token))
        await asyncio.wait_for(provider.started.wait(), timeout=1)
        token.cancel("user pressed stop")

        with pytest.raises(RequestAbortedError):
            await task
        stats = dispatcher.circuit_breaker.get_all_stats()["p1"]
        assert stats["failure_count"] == 0
        assert stats["failed_calls"] == 0
        assert dispatcher.metrics.get_metrics()["failed_requests"] == 1
        assert events.of("dispatch.request.aborted")

    @pytest.mark.asyncio
    async def test_abort_stream_by_request_id(self, events, clock):
        gate = asyncio.Event()
        dispatcher, provider = _build(events, clock, provider=FakeProvider(gate=gate))
        request = make_request()

        task = asyncio.create_task(dispatcher.get_completion(request))
        await asyncio.wait_for(provider.started.wait(), timeout=1)
        assert dispatcher.get_stats()["active_streams"] == 1
        assert dispatcher.abort_stream(request.request_id) is True

        with pytest.raises(RequestAbortedError):
            await task
        assert dispatcher.abort_stream(request.request_id) is False
        assert dispatcher.get_stats()["active_streams"] == 0

    @pytest.mark.asyncio
    async def test_abort_queued_request(self, dispatcher):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        deferred = await dispatcher.get_completion(make_request("three"), cancel_token=CancellationToken())

        assert dispatcher.abort_stream(deferred.request_id) is True
        with pytest.raises(RequestAbortedError):
            await deferred.pending

    @pytest.mark.asyncio
    async def test_abort_all_streams(self, dispatcher, events):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        deferred = await dispatcher.get_completion(make_request("three"))

        assert dispatcher.abort_all_streams() == 1
        with pytest.raises(RequestAbortedError):
            await deferred.pending
        assert events.of("dispatch.streams.aborted_all")[0]["queued"] == 1

    @pytest.mark.asyncio
    async def test_abort_dequeued_request_waiting_for_window(self, dispatcher, fake_provider):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        deferred = await dispatcher.get_completion(make_request("three"))

        drain = asyncio.create_task(dispatcher.requests.process_queue())
        await _wait_until(lambda: len(dispatcher.requests) == 0)
        await asyncio.sleep(0.02)
        assert not drain.done()

        assert dispatcher.abort_stream(deferred.request_id) is True
        with pytest.raises(RequestAbortedError):
            await deferred.pending
        assert await asyncio.wait_for(drain, timeout=1) == 0
        assert fake_provider.calls == 2

    @pytest.mark.asyncio
    async def test_abort_all_reaches_dequeued_request(self, dispatcher, fake_provider, events):
        await dispatcher.get_completion(make_request("one"))
        await dispatcher.get_completion(make_request("two"))
        deferred = await dispatcher.get_completion(make_request("three"))

        drain = asyncio.create_task(dispatcher.requests.process_queue())
        await _wait_until(lambda: len(dispatcher.requests) == 0)

        assert dispatcher.abort_all_streams() == 1
        with pytest.raises(RequestAbortedError):
            await deferred.pending
        assert await asyncio.wait_for(drain, timeout=1) == 0
        assert fake_provider.calls == 2
        assert events.of("dispatch.streams.aborted_all")[0] == {"in_flight": 0, "queued": 1}

    @pytest.mark.asyncio
    async def test_cancelled_token_spends_no_rate_limit(self, dispatcher, fake_provider):
        token = CancellationToken()
        token.cancel("gave up early")

        with pytest.raises(RequestAbortedError):
            await dispatcher.get_completion(make_request(), cancel_token=token)
        assert fake_provider.calls == 0
        assert dispatcher.rate_limiter.get_remaining("p1") == 2
        assert dispatcher.circuit_breaker.get_state("p1")["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_half_open_admits_bounded_concurrent_calls(self, events, clock):
        gate = asyncio.Event()
        dispatcher, provider = _build(
            events,
            clock,
            provider=FakeProvider(gate=gate),
            rate_limits={"p1": ProviderLimitsConfig(max_requests=100)},
        )
        for _ in range(5):
            dispatcher.circuit_breaker.record_failure("p1")
        clock.advance(31)

        tasks = [asyncio.create_task(dispatcher.get_completion(make_request(f"recovery {i}"))) for i in range(8)]
        await _wait_until(lambda: provider.calls == 3 and sum(t.done() for t in tasks) == 5)
        assert dispatcher.circuit_breaker.get_all_stats()["p1"]["half_open_in_flight"] == 3

        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        succeeded = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, CircuitOpenError)]
        assert len(succeeded) == 3
        assert len(rejected) == 5
        assert provider.calls == 3
        assert dispatcher.circuit_breaker.get_circuit_state("p1") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_aborted_half_open_call_frees_its_slot(self, events, clock):
        gate = asyncio.Event()
        dispatcher, provider = _build(events, clock, provider=FakeProvider(gate=gate))
        dispatcher.circuit_breaker.update_config("p1", half_open_max_calls=1)
        for _ in range(5):
            dispatcher.circuit_breaker.record_failure("p1")
        clock.advance(31)

        token = CancellationToken()
        task = asyncio.create_task(dispatcher.get_completion(make_request("first"), cancel_token=token))
        await asyncio.wait_for(provider.started.wait(), timeout=1)
        with pytest.raises(CircuitOpenError):
            await dispatcher.get_completion(make_request("second"))

        token.cancel("user pressed stop")
        with pytest.raises(RequestAbortedError):
            await task
        assert dispatcher.circuit_breaker.get_all_stats()["p1"]["half_open_in_flight"] == 0

        gate.set()
        response = await dispatcher.get_completion(make_request("third"))
        assert response.status == RequestStatus.SUCCESS
        assert dispatcher.circuit_breaker.get_circuit_state("p1") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, dispatcher):
        with pytest.raises(ProviderNotConfiguredError):
            await dispatcher.get_completion(make_request(provider="nowhere"))
        assert dispatcher.circuit_breaker.get_state("nowhere")["failure_count"] == 0
        assert dispatcher.metrics.get_metrics()["errors_by_provider"] == {"nowhere": 1}


# ==========================================================================
# Test: Routing, models and lifecycle
# ==========================================================================


class TestDispatcherServices:
    def test_resolve_target(self, dispatcher):
        assert dispatcher.resolve_target(CompletionRequest(provider="ollama", model="llama3")) == ("ollama", "llama3")
        assert dispatcher.resolve_target(CompletionRequest(model="openai:gpt-4o")) == ("openai", "gpt-4o")
        assert dispatcher.resolve_target(CompletionRequest(model="ollama:llama3:8b")) == ("ollama", "llama3:8b")
        assert dispatcher.resolve_target(CompletionRequest()) == ("p1", None)

        dispatcher.set_selected_model("p1:big")
        assert dispatcher.resolve_target(CompletionRequest()) == ("p1", "big")
        assert dispatcher.resolve_target(CompletionRequest(model="small")) == ("p1", "small")

    def test_selected_model(self, dispatcher, events):
        assert dispatcher.get_current_model() == "p1"
        dispatcher.set_selected_model("p1:big")
        assert dispatcher.get_current_model() == "p1:big"
        assert events.of("dispatch.model.selected")[0]["model"] == "big"
        with pytest.raises(ValueError):
            dispatcher.set_selected_model("no-provider-prefix")

    def test_configured_providers(self, dispatcher):
        assert dispatcher.is_provider_configured("p1") is True
        assert dispatcher.is_provider_configured("openai") is False
        assert dispatcher.get_configured_providers() == ["p1"]

    @pytest.mark.asyncio
    async def test_models_and_connection(self, dispatcher, events):
        assert await dispatcher.get_available_models("p1") == ["fake-model"]
        assert await dispatcher.get_all_unified_models() == ["p1:fake-model"]
        assert await dispatcher.get_available_models("nowhere") == []
        assert events.of("dispatch.models.fetch_failed")

        ok = await dispatcher.test_connection("p1")
        assert ok.success is True
        missing = await dispatcher.test_connection("nowhere")
        assert missing.success is False

    @pytest.mark.asyncio
    async def test_stats_and_report(self, dispatcher):
        await dispatcher.get_completion(make_request())
        stats = dispatcher.get_stats()
        assert set(stats) >= {"queue", "cache", "rate_limits", "circuits", "metrics", "active_streams"}
        assert stats["metrics"]["total_requests"] == 1
        assert stats["cache"]["size"] == 1

        summary = dispatcher.report()
        assert summary["total_requests"] == 1
        assert "dispatch_cache_size 1.0" in dispatcher.metrics.export_metrics("prometheus")

    @pytest.mark.asyncio
    async def test_lifecycle(self, events, clock):
        dispatcher, _ = _build(events, clock)
        async with dispatcher:
            assert dispatcher.is_running
            dispatcher.start()  # idempotent
        assert not dispatcher.is_running

    def test_apply_settings(self, dispatcher):
        new = make_settings(
            cache_max_size=1,
            queue_max_size=7,
            circuit_failure_threshold=2,
            rate_limits={"p1": ProviderLimitsConfig(max_requests=5, window_seconds=2.0)},
        )
        dispatcher.apply_settings(new)

        assert dispatcher.cache.max_size == 1
        assert dispatcher.requests.max_queue_size == 7
        assert dispatcher.circuit_breaker.get_config("p1").failure_threshold == 2
        assert dispatcher.rate_limiter.get_limits("p1").max_requests == 5
        assert dispatcher.config is new

    @pytest.mark.asyncio
    async def test_messages_reach_provider(self, events, clock):
        seen: list[list[Message]] = []

        class RecordingProvider(FakeProvider):
            async def get_completion(self, messages, options, cancel_token=None):
                seen.append(messages)
                async for chunk in super().get_completion(messages, options, cancel_token):
                    yield chunk

        dispatcher, _ = _build(events, clock, provider=RecordingProvider())
        await dispatcher.get_completion(make_request("ping"))
        assert seen[0][0].content == "ping"
