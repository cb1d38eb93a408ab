"""Telemetry endpoints a host application can mount next to its own API.

Provides:
  - GET /health: overall status, circuit states and queue status
  - GET /metrics: Prometheus text exposition
  - GET /stats: full Dispatcher.get_stats() snapshot
  - GET /cache/export: cache snapshot (JSON)
  - POST /cache/clear: drop every cached response
  - POST /circuits/{provider}/reset: force-close a provider's circuit
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from llm_dispatch.gateway.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    circuits: dict[str, str]
    queue: dict
    active_streams: int


def build_telemetry_router(dispatcher: Dispatcher, prefix: str = "") -> APIRouter:
    router = APIRouter(prefix=prefix, tags=["telemetry"])

    @router.get("/health", response_model=HealthResponse)
    async def health():
        circuits = {provider: stats["state"] for provider, stats in dispatcher.circuit_breaker.get_all_stats().items()}
        degraded = any(state != "closed" for state in circuits.values())
        return HealthResponse(
            status="degraded" if degraded else "ok",
            circuits=circuits,
            queue=dispatcher.requests.get_queue_status(),
            active_streams=dispatcher.get_stats()["active_streams"],
        )

    @router.get("/metrics")
    async def metrics():
        return Response(
            content=dispatcher.metrics.export_metrics("prometheus"),
            media_type=CONTENT_TYPE_LATEST,
        )

    @router.get("/stats")
    async def stats():
        return dispatcher.get_stats()

    @router.get("/cache/export")
    async def export_cache():
        return json.loads(dispatcher.cache.export_cache())

    @router.post("/cache/clear")
    async def clear_cache():
        cleared = dispatcher.cache.clear()
        logger.info("Cache cleared via telemetry API (%d entries)", cleared)
        return {"cleared": cleared}

    @router.post("/circuits/{provider}/reset")
    async def reset_circuit(provider: str):
        if provider not in dispatcher.circuit_breaker.get_all_stats():
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
        dispatcher.circuit_breaker.reset(provider)
        return {"provider": provider, "state": dispatcher.circuit_breaker.get_circuit_state(provider).value}

    return router
