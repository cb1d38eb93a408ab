from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderLimitsConfig(BaseModel):
    """Rate-limit override for a single provider (see RateLimiter)."""

    max_requests: int
    window_seconds: float = 60.0
    burst_limit: int | None = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LLM_DISPATCH_",
        extra="ignore",
    )

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    # Provider selection
    default_provider: str = "openai"
    selected_model: str = ""  # unified id, e.g. "openai:gpt-4o-mini"

    # Provider credentials
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    ollama_base_url: str = ""  # e.g. "http://localhost:11434"
    provider_timeout_seconds: float = 60.0

    # Cache
    cache_max_size: int = 200
    cache_default_ttl_seconds: float = 300.0
    cache_sweep_interval_seconds: float = 60.0

    # Rate limiter overrides, merged over the built-in provider defaults
    rate_limits: dict[str, ProviderLimitsConfig] = Field(default_factory=dict)
    rate_limit_cleanup_interval_seconds: float = 60.0

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_timeout_seconds: float = 30.0
    circuit_monitoring_period_seconds: float = 300.0
    circuit_half_open_max_calls: int = 3
    circuit_maintenance_interval_seconds: float = 30.0

    # Request queue
    queue_max_size: int = 100
    queue_drain_interval_seconds: float = 1.0
    queue_poll_interval_seconds: float = 0.25  # re-check cadence while a queued request is rate-limited

    # Metrics
    metrics_max_samples: int = 1000
    metrics_report_interval_seconds: float = 60.0


settings = Settings()


def validate_settings(config: Settings | None = None) -> None:
    """Validate dispatch settings. Raises SystemExit listing every problem."""
    config = config or settings
    errors: list[str] = []

    positive_ints = {
        "CACHE_MAX_SIZE": config.cache_max_size,
        "CIRCUIT_FAILURE_THRESHOLD": config.circuit_failure_threshold,
        "CIRCUIT_HALF_OPEN_MAX_CALLS": config.circuit_half_open_max_calls,
        "QUEUE_MAX_SIZE": config.queue_max_size,
        "METRICS_MAX_SAMPLES": config.metrics_max_samples,
    }
    for name, value in positive_ints.items():
        if value <= 0:
            errors.append(f"LLM_DISPATCH_{name} must be a positive integer (got {value})")

    positive_durations = {
        "CACHE_DEFAULT_TTL_SECONDS": config.cache_default_ttl_seconds,
        "CACHE_SWEEP_INTERVAL_SECONDS": config.cache_sweep_interval_seconds,
        "RATE_LIMIT_CLEANUP_INTERVAL_SECONDS": config.rate_limit_cleanup_interval_seconds,
        "CIRCUIT_TIMEOUT_SECONDS": config.circuit_timeout_seconds,
        "CIRCUIT_MONITORING_PERIOD_SECONDS": config.circuit_monitoring_period_seconds,
        "CIRCUIT_MAINTENANCE_INTERVAL_SECONDS": config.circuit_maintenance_interval_seconds,
        "QUEUE_DRAIN_INTERVAL_SECONDS": config.queue_drain_interval_seconds,
        "QUEUE_POLL_INTERVAL_SECONDS": config.queue_poll_interval_seconds,
        "METRICS_REPORT_INTERVAL_SECONDS": config.metrics_report_interval_seconds,
        "PROVIDER_TIMEOUT_SECONDS": config.provider_timeout_seconds,
    }
    for name, value in positive_durations.items():
        if value <= 0:
            errors.append(f"LLM_DISPATCH_{name} must be greater than zero (got {value})")

    for provider, limits in config.rate_limits.items():
        if limits.max_requests <= 0 or limits.window_seconds <= 0:
            errors.append(f"Rate limit for '{provider}' needs positive max_requests and window_seconds")
        if limits.burst_limit is not None and limits.burst_limit <= 0:
            errors.append(f"Burst limit for '{provider}' must be positive when set")

    if config.selected_model:
        provider, _, model = config.selected_model.partition(":")
        if not provider or not model:
            errors.append(
                f"LLM_DISPATCH_SELECTED_MODEL must look like 'provider:model' (got {config.selected_model!r})"
            )

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
