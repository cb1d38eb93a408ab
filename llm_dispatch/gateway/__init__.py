"""LLM Dispatch Layer.

Sits between the application and the providers:
  - Response Cache (TTL expiry, LRU eviction)
  - Rate Limiter (per-provider window with burst guard)
  - Circuit Breaker (half-open recovery)
  - Request Manager (bounded priority queue for deferred requests)
  - Metrics Collector (latency percentiles, Prometheus export)
  - Provider Adapters (OpenAI SSE, Ollama NDJSON)
"""
