"""
Telemetry Module
================

Observability for the ingestion engine.

Components:
- sentry.py: Error tracking (webhook translation failures, backfill jobs)

Usage:
    from bizinsights.telemetry import init_sentry, capture_exception
"""

from bizinsights.telemetry.sentry import (
    capture_exception,
    capture_message,
    init_sentry,
)

__all__ = [
    "capture_exception",
    "capture_message",
    "init_sentry",
]
