"""Tests for the telemetry router mounted on a FastAPI app."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from llm_dispatch.api.telemetry import build_telemetry_router

from tests.conftest import make_request


@pytest.fixture
def app(dispatcher):
    app = FastAPI()
    app.include_router(build_telemetry_router(dispatcher, prefix="/telemetry"))
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ==========================================================================
# Test: Health and metrics
# ==========================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_ok_when_all_circuits_closed(self, client):
        resp = await client.get("/telemetry/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["circuits"]["openai"] == "closed"
        assert data["queue"]["queue_length"] == 0
        assert data["active_streams"] == 0

    @pytest.mark.asyncio
    async def test_degraded_when_a_circuit_is_open(self, client, dispatcher):
        for _ in range(dispatcher.config.circuit_failure_threshold):
            dispatcher.circuit_breaker.record_failure("openai")

        data = (await client.get("/telemetry/health")).json()
        assert data["status"] == "degraded"
        assert data["circuits"]["openai"] == "open"

    @pytest.mark.asyncio
    async def test_prometheus_metrics(self, client, dispatcher):
        await dispatcher.complete(make_request())

        resp = await client.get("/telemetry/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "ai_requests_total 1.0" in resp.text
        assert 'ai_provider_requests_total{provider="p1"} 1.0' in resp.text

    @pytest.mark.asyncio
    async def test_stats(self, client, dispatcher):
        await dispatcher.complete(make_request())

        data = (await client.get("/telemetry/stats")).json()
        assert data["metrics"]["total_requests"] == 1
        assert data["cache"]["size"] == 1
        assert "p1" in data["rate_limits"]


# ==========================================================================
# Test: Admin actions
# ==========================================================================


class TestAdminActions:
    @pytest.mark.asyncio
    async def test_cache_export_and_clear(self, client, dispatcher):
        await dispatcher.complete(make_request("one"))
        await dispatcher.complete(make_request("two"))

        exported = (await client.get("/telemetry/cache/export")).json()
        assert len(exported["entries"]) == 2
        assert exported["stats"]["size"] == 2

        resp = await client.post("/telemetry/cache/clear")
        assert resp.json() == {"cleared": 2}
        assert len(dispatcher.cache) == 0

    @pytest.mark.asyncio
    async def test_reset_circuit(self, client, dispatcher):
        for _ in range(dispatcher.config.circuit_failure_threshold):
            dispatcher.circuit_breaker.record_failure("openai")

        resp = await client.post("/telemetry/circuits/openai/reset")
        assert resp.status_code == 200
        assert resp.json() == {"provider": "openai", "state": "closed"}
        assert dispatcher.circuit_breaker.is_open("openai") is False

    @pytest.mark.asyncio
    async def test_reset_unknown_circuit(self, client):
        resp = await client.post("/telemetry/circuits/nowhere/reset")
        assert resp.status_code == 404
