"""Circuit Breaker: per-provider failure gate with half-open recovery.

State machine per provider:
  - CLOSED: normal operation, calls pass through
  - OPEN: failure_count reached the threshold, calls are rejected until
    next_retry_at
  - HALF_OPEN: cool-down elapsed; a bounded number of probe calls may pass.
    half_open_max_calls successes close the circuit, any failure re-opens it

Threshold semantics: the open decision uses the cumulative failure_count,
which decays by one on every success while closed. recent_failure_timestamps
(pruned to the monitoring period) are reported in stats only.

Open → half-open is evaluated lazily by is_open/allow_request/record_* and
by the periodic perform_maintenance() sweep, all through _cooldown_elapsed().
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from llm_dispatch.core.events import EventSink, NullEventSink
from llm_dispatch.gateway.types import KNOWN_PROVIDERS, CircuitBreakerConfig, provider_key

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Probing recovery


@dataclass
class _CircuitStats:
    """Failure tracking for a single provider's circuit."""

    provider: str
    is_open: bool = False
    half_open: bool = False
    failure_count: int = 0
    recent_failure_timestamps: deque = field(default_factory=deque)
    last_failure_time: float = 0.0
    next_retry_at: float = 0.0
    opened_at: float = 0.0
    half_open_probes_used: int = 0
    half_open_in_flight: int = 0
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0

    @property
    def state(self) -> CircuitState:
        if not self.is_open:
            return CircuitState.CLOSED
        return CircuitState.HALF_OPEN if self.half_open else CircuitState.OPEN


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker(events=bus)

        if not cb.allow_request("openai"):
            raise CircuitOpenError("openai")

        try:
            ...  # call the provider
        except RequestAbortedError:
            cb.release("openai")
            raise
        except ProviderError:
            cb.record_failure("openai")
            raise
        cb.record_success("openai")
    """

    def __init__(
        self,
        events: EventSink | None = None,
        config: CircuitBreakerConfig | None = None,
        providers: Iterable[str] = KNOWN_PROVIDERS,
        clock: Callable[[], float] | None = None,
    ):
        self._events = events or NullEventSink()
        self._clock = clock or time.time
        self._default_config = config or CircuitBreakerConfig()
        self._configs: dict[str, CircuitBreakerConfig] = {}
        self._circuits: dict[str, _CircuitStats] = {}
        for provider in providers:
            self._get_circuit(provider)

    def _get_circuit(self, provider: str) -> _CircuitStats:
        provider = provider_key(provider)
        if provider not in self._circuits:
            self._circuits[provider] = _CircuitStats(provider=provider)
        return self._circuits[provider]

    def get_config(self, provider: str) -> CircuitBreakerConfig:
        return self._configs.get(provider_key(provider), self._default_config)

    # -- State checks ---------------------------------------------------------

    def is_open(self, provider: str) -> bool:
        """True while the circuit is open or half-open.

        Performs the lazy open → half-open transition once the cool-down
        has elapsed; use allow_request() to decide whether a probe may pass.
        """
        circuit = self._get_circuit(provider)
        if circuit.is_open:
            self._maybe_half_open(circuit, self._clock())
        return circuit.is_open

    def allow_request(self, provider: str) -> bool:
        """Return True if a real provider call may be attempted now."""
        circuit = self._get_circuit(provider)
        if not circuit.is_open:
            return True

        self._maybe_half_open(circuit, self._clock())
        if not circuit.half_open:
            return False

        slots_taken = circuit.half_open_probes_used + circuit.half_open_in_flight
        if slots_taken >= self.get_config(circuit.provider).half_open_max_calls:
            return False
        circuit.half_open_in_flight += 1
        return True

    def release(self, provider: str) -> None:
        """Give back a half-open probe slot for a call that never produced an outcome."""
        circuit = self._get_circuit(provider)
        if circuit.half_open and circuit.half_open_in_flight > 0:
            circuit.half_open_in_flight -= 1

    # -- Recording ------------------------------------------------------------

    def record_success(self, provider: str) -> None:
        circuit = self._get_circuit(provider)
        config = self.get_config(circuit.provider)
        now = self._clock()
        self._prune(circuit, config, now)

        circuit.total_calls += 1
        circuit.successful_calls += 1

        if circuit.is_open:
            self._maybe_half_open(circuit, now)
            if circuit.half_open:
                circuit.half_open_in_flight = max(0, circuit.half_open_in_flight - 1)
                circuit.half_open_probes_used += 1
                if circuit.half_open_probes_used >= config.half_open_max_calls:
                    self._close(circuit, now)
        elif circuit.failure_count > 0:
            circuit.failure_count -= 1

        self._events.publish(
            "circuit.success",
            {
                "provider": circuit.provider,
                "state": circuit.state.value,
                "failure_count": circuit.failure_count,
                "timestamp": now,
            },
        )

    def record_failure(self, provider: str) -> None:
        circuit = self._get_circuit(provider)
        config = self.get_config(circuit.provider)
        now = self._clock()
        self._prune(circuit, config, now)

        circuit.total_calls += 1
        circuit.failed_calls += 1
        circuit.failure_count += 1
        circuit.last_failure_time = now
        circuit.recent_failure_timestamps.append(now)

        if circuit.is_open:
            self._maybe_half_open(circuit, now)
            if circuit.half_open:
                self._open(circuit, config, now, reason="half_open_failure")
        elif circuit.failure_count >= config.failure_threshold:
            self._open(circuit, config, now, reason="threshold")

        self._events.publish(
            "circuit.failure",
            {
                "provider": circuit.provider,
                "state": circuit.state.value,
                "failure_count": circuit.failure_count,
                "threshold": config.failure_threshold,
                "timestamp": now,
            },
        )

    # -- Introspection --------------------------------------------------------

    def get_state(self, provider: str) -> dict:
        circuit = self._get_circuit(provider)
        if circuit.is_open:
            self._maybe_half_open(circuit, self._clock())
        return {
            "is_open": circuit.is_open,
            "failure_count": circuit.failure_count,
            "last_failure_time": circuit.last_failure_time,
            "next_retry_time": circuit.next_retry_at,
        }

    def get_circuit_state(self, provider: str) -> CircuitState:
        circuit = self._get_circuit(provider)
        if circuit.is_open:
            self._maybe_half_open(circuit, self._clock())
        return circuit.state

    def get_all_stats(self) -> dict[str, dict]:
        """Dashboard snapshot of every circuit."""
        now = self._clock()
        stats: dict[str, dict] = {}
        for provider, circuit in self._circuits.items():
            config = self.get_config(provider)
            if circuit.is_open:
                self._maybe_half_open(circuit, now)
            self._prune(circuit, config, now)
            success_rate = circuit.successful_calls / circuit.total_calls if circuit.total_calls else 1.0
            stats[provider] = {
                "state": circuit.state.value,
                "is_open": circuit.is_open,
                "failure_count": circuit.failure_count,
                "recent_failures": len(circuit.recent_failure_timestamps),
                "last_failure_time": circuit.last_failure_time,
                "next_retry_time": circuit.next_retry_at,
                "half_open_probes_used": circuit.half_open_probes_used,
                "half_open_in_flight": circuit.half_open_in_flight,
                "total_calls": circuit.total_calls,
                "successful_calls": circuit.successful_calls,
                "failed_calls": circuit.failed_calls,
                "success_rate": round(success_rate, 4),
                "config": config.to_dict(),
            }
        return stats

    # -- Administration -------------------------------------------------------

    def reset(self, provider: str) -> None:
        """Force-close a provider's circuit and forget its failures."""
        circuit = self._get_circuit(provider)
        circuit.is_open = False
        circuit.half_open = False
        circuit.failure_count = 0
        circuit.recent_failure_timestamps.clear()
        circuit.next_retry_at = 0.0
        circuit.half_open_probes_used = 0
        circuit.half_open_in_flight = 0
        self._events.publish("circuit.reset", {"provider": circuit.provider})
        logger.info("Circuit for %s manually RESET", circuit.provider)

    def update_config(self, provider: str, **changes) -> CircuitBreakerConfig:
        """Override thresholds for one provider (unknown fields raise TypeError)."""
        provider = provider_key(provider)
        config = dataclasses.replace(self.get_config(provider), **changes)
        self._configs[provider] = config
        self._get_circuit(provider)
        self._events.publish("circuit.config_updated", {"provider": provider, "config": config.to_dict()})
        return config

    def update_default_config(self, **changes) -> CircuitBreakerConfig:
        """Change thresholds for every provider without its own override."""
        self._default_config = dataclasses.replace(self._default_config, **changes)
        self._events.publish(
            "circuit.config_updated", {"provider": None, "config": self._default_config.to_dict()}
        )
        return self._default_config

    def perform_maintenance(self) -> int:
        """Periodic sweep: prune failure windows, move cooled-down circuits to half-open.

        Returns the number of circuits that became ready for retry.
        """
        now = self._clock()
        ready = 0
        for provider, circuit in self._circuits.items():
            self._prune(circuit, self.get_config(provider), now)
            if circuit.is_open and not circuit.half_open and self._cooldown_elapsed(circuit, now):
                self._maybe_half_open(circuit, now)
                ready += 1
                self._events.publish("circuit.ready_for_retry", {"provider": provider, "timestamp": now})
        return ready

    # -- Internals ------------------------------------------------------------

    @staticmethod
    def _cooldown_elapsed(circuit: _CircuitStats, now: float) -> bool:
        return now >= circuit.next_retry_at

    def _maybe_half_open(self, circuit: _CircuitStats, now: float) -> None:
        if circuit.half_open or not self._cooldown_elapsed(circuit, now):
            return
        circuit.half_open = True
        circuit.half_open_probes_used = 0
        circuit.half_open_in_flight = 0
        self._events.publish("circuit.half_opened", {"provider": circuit.provider, "timestamp": now})
        logger.info("Circuit for %s transitioning to HALF_OPEN", circuit.provider)

    def _open(self, circuit: _CircuitStats, config: CircuitBreakerConfig, now: float, reason: str) -> None:
        circuit.is_open = True
        circuit.half_open = False
        circuit.half_open_probes_used = 0
        circuit.half_open_in_flight = 0
        circuit.opened_at = now
        circuit.next_retry_at = now + config.timeout_seconds
        self._events.publish(
            "circuit.opened",
            {
                "provider": circuit.provider,
                "reason": reason,
                "failure_count": circuit.failure_count,
                "next_retry_at": circuit.next_retry_at,
                "timestamp": now,
            },
        )
        logger.warning(
            "Circuit for %s OPENED (%s, %d failures), retry at %.0f",
            circuit.provider,
            reason,
            circuit.failure_count,
            circuit.next_retry_at,
        )

    def _close(self, circuit: _CircuitStats, now: float) -> None:
        circuit.is_open = False
        circuit.half_open = False
        circuit.half_open_probes_used = 0
        circuit.half_open_in_flight = 0
        circuit.failure_count = 0
        circuit.recent_failure_timestamps.clear()
        circuit.next_retry_at = 0.0
        self._events.publish("circuit.closed", {"provider": circuit.provider, "timestamp": now})
        logger.info("Circuit for %s CLOSED (recovered)", circuit.provider)

    @staticmethod
    def _prune(circuit: _CircuitStats, config: CircuitBreakerConfig, now: float) -> None:
        cutoff = now - config.monitoring_period_seconds
        timestamps = circuit.recent_failure_timestamps
        while timestamps and timestamps[0] < cutoff:
            timestamps.popleft()
