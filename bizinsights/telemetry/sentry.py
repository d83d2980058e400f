"""
Sentry Error Tracking
=====================

Centralized error tracking for the ingestion engine.

Related files:
- bizinsights/main.py: Initializes Sentry in create_app()
- bizinsights/services/ingestion_gateway.py: Captures adapter translation failures
- bizinsights/workers/arq_worker.py: Captures backfill job failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """Initialize Sentry once during application or worker startup.

    Returns:
        True if Sentry was initialized, False when SENTRY_DSN is unset.
    """
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.info("[SENTRY] SENTRY_DSN not set - error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(
                level=logging.INFO,         # breadcrumbs
                event_level=logging.ERROR,  # events
            ),
        ],
        traces_sample_rate=0.1,
        # Webhook payloads carry customer PII
        send_default_pii=False,
        release=os.environ.get("RELEASE_VERSION"),
    )

    logger.info(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """Capture a caught-and-handled exception with extra context.

    Example:
        try:
            points = adapter.translate(topic, payload)
        except Exception as e:
            capture_exception(e, extra={"platform": "shopify", "topic": topic})
            ...
    """
    if not sentry_sdk.is_initialized():
        logger.debug(f"[SENTRY] Not initialized, skipping capture of {type(exception).__name__}")
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a notable non-exception event (e.g. integration flipped to error)."""
    if not sentry_sdk.is_initialized():
        return

    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
