"""
Telemetry Module
================

Error tracking for the billing service.

Components:
- sentry.py: Error tracking (webhook handler failures, provider errors)

Usage:
    from tutor_billing.telemetry import init_sentry, capture_exception
"""

from .sentry import init_sentry, capture_exception

__all__ = ["init_sentry", "capture_exception"]
