"""
Sentry Error Tracking
=====================

Webhook handlers swallow their own failures so Stripe never sees a non-200
for an application error. Those failures are still reported here, tagged
with the event id and type, so a lost event can be found and replayed.

Related files:
- tutor_billing/main.py: Initializes Sentry on app startup
- tutor_billing/services/webhook_dispatcher.py: Captures handler failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str] = None, environment: Optional[str] = None) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = dsn or os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = environment or os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Report a caught-and-handled exception.

    Example:
        try:
            await handler(event)
        except Exception as e:
            capture_exception(e, extra={"event_id": event.id})
    """
    try:
        with sentry_sdk.push_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to capture exception: {e}")
