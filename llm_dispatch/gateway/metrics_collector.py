"""Metrics Collector: counters, latencies, gauges and rolling time series.

Tracks:
  - overall request/success/failure counters and per-provider aggregates
  - a capped sample of response times (average, p95/p99 via nearest rank)
  - capped time series of requests, response times and errors (throughput)
  - cache hit/miss counters
  - free-form gauges (e.g. queue length) set by the Dispatcher

Export formats: "json", "csv" and "prometheus" (text exposition rendered
by prometheus_client from a custom collector over the current snapshot).
"""

from __future__ import annotations

import csv
import io
import json
import logging
import math
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from llm_dispatch.core.events import EventSink, NullEventSink

logger = logging.getLogger(__name__)

DEFAULT_MAX_SAMPLES = 1000
THROUGHPUT_WINDOW_SECONDS = 60.0

EXPORT_FORMATS = ("json", "csv", "prometheus")


@dataclass
class MetricSample:
    """A single time-series observation."""

    timestamp: float
    name: str
    value: float
    tags: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "name": self.name, "value": self.value, "tags": dict(self.tags)}


@dataclass
class ProviderMetrics:
    """Aggregates for one provider, recomputed on every record."""

    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_duration_ms: float = 0.0
    average_response_time: float = 0.0
    last_request_time: float = 0.0
    error_rate: float = 0.0

    def record(self, duration_ms: float, success: bool, now: float) -> None:
        self.requests += 1
        self.total_duration_ms += duration_ms
        self.last_request_time = now
        if success:
            self.successes += 1
        else:
            self.failures += 1
        self.average_response_time = self.total_duration_ms / self.requests
        self.error_rate = self.failures / self.requests

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "total_duration_ms": self.total_duration_ms,
            "average_response_time": self.average_response_time,
            "last_request_time": self.last_request_time,
            "error_rate": self.error_rate,
        }


def percentile(values, p: float) -> float:
    """Nearest-rank percentile over a sorted copy of values (0 when empty)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(p / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


class _SnapshotCollector:
    """Exposes a metrics snapshot to a prometheus_client registry."""

    def __init__(self, collector: MetricsCollector):
        self._collector = collector

    def collect(self):
        detailed = self._collector.get_detailed_metrics()

        total = CounterMetricFamily("ai_requests_total", "Total number of AI requests")
        total.add_metric([], detailed["total_requests"])
        yield total

        duration = GaugeMetricFamily("ai_request_duration_seconds", "Average request duration")
        duration.add_metric([], detailed["average_response_time"] / 1000)
        yield duration

        hit_rate = GaugeMetricFamily("ai_cache_hit_rate", "Cache hit rate")
        hit_rate.add_metric([], detailed["cache_metrics"]["hit_rate"])
        yield hit_rate

        by_provider = CounterMetricFamily(
            "ai_provider_requests_total", "Total requests by provider", labels=["provider"]
        )
        error_rate = GaugeMetricFamily("ai_provider_error_rate", "Error rate by provider", labels=["provider"])
        for provider, data in detailed["provider_metrics"].items():
            by_provider.add_metric([provider], data["requests"])
            error_rate.add_metric([provider], data["error_rate"])
        yield by_provider
        yield error_rate

        for name, entries in self._collector.gauge_families().items():
            label_names = sorted({k for tags, _ in entries for k in tags})
            gauge = GaugeMetricFamily(name, f"Gauge {name}", labels=label_names)
            for tags, value in entries:
                gauge.add_metric([tags.get(k, "") for k in label_names], value)
            yield gauge


class MetricsCollector:
    """Collects performance data for dispatched requests.

    Usage:
        metrics = MetricsCollector(events=bus)
        metrics.record_request("openai", duration_ms=420, success=True)
        print(metrics.export_metrics("prometheus"))
    """

    def __init__(
        self,
        events: EventSink | None = None,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        clock: Callable[[], float] | None = None,
    ):
        if max_samples <= 0:
            raise ValueError("max_samples must be positive")
        self._events = events or NullEventSink()
        self._clock = clock or time.time
        self.max_samples = max_samples
        self._init_state()

    def _init_state(self) -> None:
        self._total_requests = 0
        self._successful_requests = 0
        self._failed_requests = 0
        self._requests_by_provider: dict[str, int] = {}
        self._errors_by_provider: dict[str, int] = {}
        self._provider_metrics: dict[str, ProviderMetrics] = {}
        self._response_times: deque[float] = deque(maxlen=self.max_samples)
        self._cache_hits = 0
        self._cache_misses = 0
        self._gauges: dict[tuple[str, tuple], float] = {}
        self._series: dict[str, deque[MetricSample]] = {
            "requests": deque(maxlen=self.max_samples),
            "response_time": deque(maxlen=self.max_samples),
            "errors": deque(maxlen=self.max_samples),
            "gauges": deque(maxlen=self.max_samples),
        }

    # -- Recording ------------------------------------------------------------

    def record_request(self, provider: str, duration_ms: float, success: bool) -> None:
        now = self._clock()
        tags = {"provider": provider}

        self._total_requests += 1
        if success:
            self._successful_requests += 1
        else:
            self._failed_requests += 1
            self._errors_by_provider[provider] = self._errors_by_provider.get(provider, 0) + 1
        self._requests_by_provider[provider] = self._requests_by_provider.get(provider, 0) + 1

        self._response_times.append(duration_ms)
        self._provider_metrics.setdefault(provider, ProviderMetrics()).record(duration_ms, success, now)

        self._series["requests"].append(MetricSample(now, "requests", 1, tags))
        self._series["response_time"].append(MetricSample(now, "response_time", duration_ms, tags))
        if not success:
            self._series["errors"].append(MetricSample(now, "errors", 1, tags))

        self._events.publish(
            "metrics.request_recorded",
            {
                "provider": provider,
                "duration_ms": duration_ms,
                "success": success,
                "total_requests": self._total_requests,
                "timestamp": now,
            },
        )

    def record_cache_hit(self, key: str) -> None:
        self._cache_hits += 1
        self._events.publish(
            "metrics.cache_hit",
            {"key": key, "total_hits": self._cache_hits, "hit_rate": self._cache_hit_rate(), "timestamp": self._clock()},
        )

    def record_cache_miss(self, key: str) -> None:
        self._cache_misses += 1
        self._events.publish(
            "metrics.cache_miss",
            {
                "key": key,
                "total_misses": self._cache_misses,
                "hit_rate": self._cache_hit_rate(),
                "timestamp": self._clock(),
            },
        )

    def set_gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        """Set a point-in-time value (queue length, open circuits, ...)."""
        name = re.sub(r"[^a-zA-Z0-9_]", "_", name)
        tags = dict(tags or {})
        self._gauges[(name, tuple(sorted(tags.items())))] = value
        self._series["gauges"].append(MetricSample(self._clock(), name, value, tags))

    # -- Snapshots ------------------------------------------------------------

    def get_metrics(self) -> dict:
        return {
            "total_requests": self._total_requests,
            "successful_requests": self._successful_requests,
            "failed_requests": self._failed_requests,
            "average_response_time": self._average_response_time(),
            "requests_by_provider": dict(self._requests_by_provider),
            "errors_by_provider": dict(self._errors_by_provider),
        }

    def get_detailed_metrics(self) -> dict:
        detailed = self.get_metrics()
        detailed.update(
            {
                "provider_metrics": {p: m.to_dict() for p, m in self._provider_metrics.items()},
                "cache_metrics": {
                    "hits": self._cache_hits,
                    "misses": self._cache_misses,
                    "hit_rate": self._cache_hit_rate(),
                },
                "performance_metrics": {
                    "average_response_time": detailed["average_response_time"],
                    "p95_response_time": percentile(self._response_times, 95),
                    "p99_response_time": percentile(self._response_times, 99),
                    "throughput": self._throughput(),
                },
                "gauges": [
                    {"name": name, "tags": dict(tags), "value": value}
                    for (name, tags), value in self._gauges.items()
                ],
                "time_series": {
                    series: [s.to_dict() for s in samples] for series, samples in self._series.items()
                },
            }
        )
        return detailed

    def get_metrics_for_time_range(self, start: float, end: float) -> dict:
        """Time-series samples with start <= timestamp <= end, plus a summary."""

        def window(series: str) -> list[MetricSample]:
            return [s for s in self._series[series] if start <= s.timestamp <= end]

        requests = window("requests")
        response_time = window("response_time")
        errors = window("errors")
        average = sum(s.value for s in response_time) / len(response_time) if response_time else 0.0

        return {
            "requests": [s.to_dict() for s in requests],
            "response_time": [s.to_dict() for s in response_time],
            "errors": [s.to_dict() for s in errors],
            "summary": {
                "total_requests": len(requests),
                "average_response_time": average,
                "error_rate": len(errors) / len(requests) if requests else 0.0,
            },
        }

    def gauge_families(self) -> dict[str, list[tuple[dict, float]]]:
        families: dict[str, list[tuple[dict, float]]] = {}
        for (name, tags), value in self._gauges.items():
            families.setdefault(name, []).append((dict(tags), value))
        return families

    # -- Export ---------------------------------------------------------------

    def export_metrics(self, format: str = "json") -> str:
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported metrics format '{format}' (expected one of {', '.join(EXPORT_FORMATS)})")

        if format == "csv":
            return self._export_csv()
        if format == "prometheus":
            registry = CollectorRegistry(auto_describe=False)
            registry.register(_SnapshotCollector(self))
            return generate_latest(registry).decode("utf-8")
        return json.dumps(self.get_detailed_metrics(), indent=2)

    def _export_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["timestamp", "provider", "requests", "successes", "failures", "avg_response_time", "error_rate"])
        now = self._clock()
        for provider, data in self._provider_metrics.items():
            writer.writerow(
                [now, provider, data.requests, data.successes, data.failures, data.average_response_time, data.error_rate]
            )
        return buffer.getvalue()

    # -- Maintenance ----------------------------------------------------------

    def reset_metrics(self) -> None:
        self._init_state()
        self._events.publish("metrics.reset", {"timestamp": self._clock()})

    def report(self) -> dict:
        """Periodic summary: publish a report event and log it at INFO."""
        summary = {
            "total_requests": self._total_requests,
            "success_rate": self._successful_requests / self._total_requests if self._total_requests else 0.0,
            "average_response_time": self._average_response_time(),
            "cache_hit_rate": self._cache_hit_rate(),
            "throughput": self._throughput(),
            "active_providers": len(self._provider_metrics),
        }
        self._events.publish("metrics.periodic_report", {**summary, "timestamp": self._clock()})
        if self._total_requests:
            logger.info(
                "Dispatch metrics: %d requests, %.0f%% success, avg %.0fms, cache hit rate %.0f%%",
                summary["total_requests"],
                summary["success_rate"] * 100,
                summary["average_response_time"],
                summary["cache_hit_rate"] * 100,
            )
        return summary

    # -- Internals ------------------------------------------------------------

    def _average_response_time(self) -> float:
        if not self._response_times:
            return 0.0
        return sum(self._response_times) / len(self._response_times)

    def _cache_hit_rate(self) -> float:
        lookups = self._cache_hits + self._cache_misses
        return self._cache_hits / lookups if lookups else 0.0

    def _throughput(self) -> float:
        """Requests per second over the last minute."""
        cutoff = self._clock() - THROUGHPUT_WINDOW_SECONDS
        recent = sum(1 for s in self._series["requests"] if s.timestamp > cutoff)
        return recent / THROUGHPUT_WINDOW_SECONDS
