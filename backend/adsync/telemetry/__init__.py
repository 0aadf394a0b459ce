"""
Telemetry Module
================

Error reporting for the sync engine.

Components:
- sentry.py: Error tracking

Environment Variables Required:
- SENTRY_DSN: Sentry project DSN
"""

from adsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
