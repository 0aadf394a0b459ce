"""
Sentry Error Tracking
=====================

Error reporting for sync passes.

Related files:
- adsync/workers/sync_worker.py: Initializes Sentry and reports fatal sync errors

Setup:
1. Create a project at sentry.io
2. Copy DSN to the SENTRY_DSN environment variable

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from adsync.config import Settings, get_settings

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry(settings: Optional[Settings] = None) -> bool:
    """
    Initialize the Sentry SDK once per process.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.

    Example:
        from adsync.telemetry.sentry import init_sentry

        def main():
            init_sentry()
            ...
    """
    global _initialized
    settings = settings or get_settings()

    if not settings.SENTRY_DSN:
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
        )
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False

    _initialized = True
    logger.debug("[SENTRY] Initialized for %s environment", settings.ENVIRONMENT)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Report a handled exception with extra context.

    Example:
        except SyncPhaseError as e:
            capture_exception(e, extra={"phase": e.phase.value, "processed": e.processed})
            return failed_report(e)
    """
    if not _initialized:
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.push_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable non-exception event (e.g. a partial sync)."""
    if not _initialized:
        logger.log(logging.getLevelName(level.upper()), "Message (Sentry disabled): %s", message)
        return

    try:
        with sentry_sdk.push_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
