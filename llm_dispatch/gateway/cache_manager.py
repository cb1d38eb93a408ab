"""Response Cache: TTL expiry with least-recently-used eviction.

Maps a cache key (derived from the canonicalized request) to the full
provider response text:
  - get() drops and misses entries older than their TTL
  - set() at capacity evicts the entry with the oldest last access
  - cleanup_expired() is the periodic sweep for keys never re-queried
  - export/import snapshots for debugging and backup (expired entries skipped)

Every hit/miss/set/eviction is published on the event sink.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from llm_dispatch.core.events import EventSink, NullEventSink
from llm_dispatch.gateway.errors import CacheImportError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 200
DEFAULT_TTL_SECONDS = 5 * 60.0


@dataclass
class CacheEntry:
    """A cached response with access bookkeeping."""

    value: str
    created_at: float
    ttl: float  # seconds
    access_count: int = 0
    last_accessed_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl

    def to_dict(self, key: str) -> dict:
        return {
            "key": key,
            "value": self.value,
            "created_at": self.created_at,
            "ttl": self.ttl,
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at,
        }


class CacheManager:
    """In-memory response cache with TTL and LRU eviction.

    Usage:
        cache = CacheManager(events=bus, max_size=200, default_ttl=300)

        cached = cache.get(key)
        if cached is None:
            ...
            cache.set(key, content)
    """

    def __init__(
        self,
        events: EventSink | None = None,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._events = events or NullEventSink()
        self._clock = clock or time.time
        self._entries: dict[str, CacheEntry] = {}
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._reset_counters()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> str | None:
        """Return the cached value, or None on miss/expiry."""
        now = self._clock()
        entry = self._entries.get(key)

        if entry is None:
            self._stats["misses"] += 1
            self._events.publish("cache.miss", {"key": key, "timestamp": now})
            return None

        if entry.is_expired(now):
            del self._entries[key]
            self._stats["misses"] += 1
            self._stats["expirations"] += 1
            self._events.publish(
                "cache.expired",
                {"key": key, "age": now - entry.created_at, "ttl": entry.ttl, "timestamp": now},
            )
            self._events.publish("cache.miss", {"key": key, "reason": "expired", "timestamp": now})
            return None

        entry.access_count += 1
        entry.last_accessed_at = now
        self._stats["hits"] += 1
        self._events.publish(
            "cache.hit",
            {
                "key": key,
                "access_count": entry.access_count,
                "age": now - entry.created_at,
                "timestamp": now,
            },
        )
        return entry.value

    def set(self, key: str, value: str, ttl: float | None = None) -> None:
        """Store value under key, evicting the LRU entry if at capacity."""
        effective_ttl = ttl if ttl is not None and ttl > 0 else self.default_ttl
        now = self._clock()

        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_least_recently_used()

        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            ttl=effective_ttl,
            access_count=0,
            last_accessed_at=now,
        )
        self._stats["sets"] += 1
        self._events.publish(
            "cache.set",
            {
                "key": key,
                "size": len(value),
                "ttl": effective_ttl,
                "cache_size": len(self._entries),
                "timestamp": now,
            },
        )

    def delete(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self._stats["deletes"] += 1
        self._events.publish("cache.delete", {"key": key, "cache_size": len(self._entries)})
        return True

    def clear(self) -> int:
        """Drop all entries and reset statistics. Returns the number cleared."""
        cleared = len(self._entries)
        self._entries.clear()
        self._reset_counters()
        self._events.publish("cache.cleared", {"cleared_count": cleared})
        logger.debug("Cache cleared (%d entries)", cleared)
        return cleared

    def get_stats(self) -> dict:
        lookups = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / lookups if lookups else 0.0
        return {
            "hits": self._stats["hits"],
            "misses": self._stats["misses"],
            "size": len(self._entries),
            "max_size": self.max_size,
            "hit_rate": round(hit_rate, 2),
        }

    def get_detailed_stats(self) -> dict:
        now = self._clock()
        entries = [
            {
                "key": key,
                "size": len(entry.value),
                "age": now - entry.created_at,
                "ttl": entry.ttl,
                "access_count": entry.access_count,
                "last_accessed_at": entry.last_accessed_at,
            }
            for key, entry in self._entries.items()
        ]
        return {
            "stats": self.get_stats(),
            "counters": dict(self._stats),
            "entries": entries,
            "memory_usage": sum(e["size"] for e in entries),
        }

    def cleanup_expired(self) -> int:
        """Periodic sweep: remove every expired entry. Returns count removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

        if expired:
            self._stats["expirations"] += len(expired)
            self._events.publish(
                "cache.cleanup",
                {"expired_count": len(expired), "cache_size": len(self._entries), "timestamp": now},
            )
            logger.debug("Cache sweep removed %d expired entries", len(expired))
        return len(expired)

    def configure(self, max_size: int | None = None, default_ttl: float | None = None) -> None:
        """Hot-reconfigure bounds. Shrinking evicts LRU entries until within bound."""
        if max_size is not None:
            if max_size <= 0:
                raise ValueError("max_size must be positive")
            self.max_size = max_size
            while len(self._entries) > self.max_size:
                self._evict_least_recently_used()
        if default_ttl is not None:
            if default_ttl <= 0:
                raise ValueError("default_ttl must be positive")
            self.default_ttl = default_ttl

        self._events.publish(
            "cache.configured",
            {"max_size": self.max_size, "default_ttl": self.default_ttl, "cache_size": len(self._entries)},
        )

    # -- Export / import ------------------------------------------------------

    def export_entries(self) -> list[dict]:
        return [entry.to_dict(key) for key, entry in self._entries.items()]

    def export_cache(self) -> str:
        """Serialize the cache to a JSON snapshot."""
        return json.dumps(
            {
                "timestamp": self._clock(),
                "stats": self.get_stats(),
                "entries": self.export_entries(),
            },
            indent=2,
            ensure_ascii=False,
        )

    def import_cache(self, data: str | list[dict]) -> int:
        """Replace the cache with a snapshot, skipping already-expired entries.

        Accepts either the JSON produced by export_cache() or a list of
        entry dicts. Returns the number of entries loaded.
        """
        now = self._clock()
        try:
            raw_entries = self._parse_snapshot(data)
            entries = [
                (
                    str(item["key"]),
                    CacheEntry(
                        value=str(item["value"]),
                        created_at=float(item["created_at"]),
                        ttl=float(item["ttl"]),
                        access_count=int(item.get("access_count", 0)),
                        last_accessed_at=float(item.get("last_accessed_at", item["created_at"])),
                    ),
                )
                for item in raw_entries
            ]
        except (ValueError, TypeError, KeyError) as e:
            self._events.publish("cache.import_failed", {"error": str(e), "timestamp": now})
            raise CacheImportError(f"Failed to import cache: {e}") from e

        # Replaces entries only; hit/miss statistics carry over
        self._entries.clear()
        for key, entry in entries:
            if entry.is_expired(now):
                continue
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_least_recently_used()
            self._entries[key] = entry

        self._events.publish("cache.imported", {"imported_count": len(self._entries), "timestamp": now})
        logger.info("Imported %d cache entries (%d in snapshot)", len(self._entries), len(entries))
        return len(self._entries)

    # -- Internals ------------------------------------------------------------

    @staticmethod
    def _parse_snapshot(data: str | list[dict]) -> list[dict]:
        if isinstance(data, str):
            parsed = json.loads(data)
            if isinstance(parsed, dict):
                parsed = parsed["entries"]
        else:
            parsed = data
        if not isinstance(parsed, list):
            raise TypeError("cache snapshot entries must be a list")
        return parsed

    def _evict_least_recently_used(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        del self._entries[oldest_key]
        self._stats["evictions"] += 1
        self._events.publish(
            "cache.evicted",
            {"key": oldest_key, "reason": "lru", "cache_size": len(self._entries)},
        )

    def _reset_counters(self) -> None:
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0, "expirations": 0}
