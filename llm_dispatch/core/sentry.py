"""Sentry error tracking integration.

Initializes Sentry SDK if LLM_DISPATCH_SENTRY_DSN is set.
Does nothing otherwise, so it is safe to call unconditionally.
"""

import logging

from llm_dispatch.core.config import Settings, settings

logger = logging.getLogger(__name__)


def init_sentry(config: Settings | None = None) -> bool:
    """Initialize Sentry if a DSN is configured. Returns True when enabled."""
    config = config or settings
    if not config.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=config.sentry_dsn,
        environment=config.app_env,
        traces_sample_rate=0.1 if config.app_env == "production" else 1.0,
        send_default_pii=False,
        integrations=[
            # Provider failures are logged at WARNING; only ERROR becomes a Sentry event
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
    )
    logger.info("Sentry initialized (env=%s)", config.app_env)
    return True
