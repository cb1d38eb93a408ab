from __future__ import annotations

import asyncio

import pytest

from llm_dispatch.core.config import ProviderLimitsConfig, Settings
from llm_dispatch.gateway.dispatcher import Dispatcher
from llm_dispatch.gateway.providers import BaseProvider, ProviderRegistry
from llm_dispatch.gateway.types import CompletionRequest, ConnectionResult, Message

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """EventSink that keeps every published event."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, event: str, payload: dict) -> None:
        self.events.append((event, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[dict]:
        return [payload for event, payload in self.events if event == name]


class FakeProvider(BaseProvider):
    """In-memory provider streaming canned chunks.

    error is raised after `error_after` chunks have been yielded; `gate`
    (an asyncio.Event) holds the stream open until set.
    """

    name = "fake"
    default_model = "fake-model"
    requires_api_key = False

    def __init__(self, chunks=("Hello", ", world"), error=None, error_after=0, models=("fake-model",), gate=None):
        super().__init__()
        self.chunks = list(chunks)
        self.error = error
        self.error_after = error_after
        self.models = list(models)
        self.gate = gate
        self.calls = 0
        self.started = asyncio.Event()

    async def get_completion(self, messages, options, cancel_token=None):
        self.calls += 1
        self.started.set()
        for index, chunk in enumerate(self.chunks):
            if self.error is not None and index == self.error_after:
                raise self.error
            if self.gate is not None:
                await self.gate.wait()
            yield chunk
        if self.error is not None and self.error_after >= len(self.chunks):
            raise self.error

    async def get_available_models(self):
        if isinstance(self.error, Exception):
            raise self.error
        return list(self.models)

    async def test_connection(self):
        if self.error is not None:
            return ConnectionResult(False, str(self.error))
        return ConnectionResult(True, "ok", 1)


def make_request(text: str = "Hi", **kwargs) -> CompletionRequest:
    return CompletionRequest(messages=[Message("user", text)], **kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "default_provider": "p1",
        "openai_api_key": "",
        "ollama_base_url": "",
        "rate_limits": {"p1": ProviderLimitsConfig(max_requests=2, window_seconds=1.0)},
        "queue_poll_interval_seconds": 0.01,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    registry = ProviderRegistry()
    registry.register("p1", fake_provider)
    return registry


@pytest.fixture
def dispatcher(registry, events, clock):
    return Dispatcher(providers=registry, events=events, config=make_settings(), clock=clock)
