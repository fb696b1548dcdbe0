"""Premium status calculator.

WHAT:
    Pure functions turning a stored billing record into the derived
    "is premium active" status plus display fields (days remaining, next
    charge date).

WHY:
    Premium status is never stored. Every read path that gates premium-only
    behavior (status endpoints, content updates) derives it from the record
    here, so subscription and legacy one-time-payment logic live in one place.

RULES:
    - Subscription present and status `active`: active when the period end is
      unknown. Otherwise active iff the period end is in the future and the
      subscription is not set to cancel at period end (configurable, see
      `cancel_revokes_access`).
    - No subscription but legacy flag set: active iff now < payment date +
      class window. A legacy record without a payment date is active.
    - Otherwise: no premium.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models import SubscriptionStatusEnum


DEFAULT_LEGACY_WINDOW_DAYS = 365


@dataclass(frozen=True)
class PremiumStatus:
    has_premium: bool
    is_active: bool
    days_remaining: Optional[int] = None
    next_charge_date: Optional[datetime] = None


NO_PREMIUM = PremiumStatus(has_premium=False, is_active=False)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to aware UTC.

    SQLite hands back naive datetimes; everything written by the billing core
    is UTC, so naive values are interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _days_until(end: datetime, now: datetime) -> int:
    return max(0, math.ceil((end - now) / timedelta(days=1)))


def compute_status(
    record,
    now: Optional[datetime] = None,
    legacy_window_days: int = DEFAULT_LEGACY_WINDOW_DAYS,
    cancel_revokes_access: bool = True,
) -> PremiumStatus:
    """Derive premium status for a billing record.

    Parameters:
        record: TutorPremium/StudentPremium row (or any object with the same
            attributes), or None when the account has no record.
        now: Evaluation instant; defaults to the current UTC time.
        legacy_window_days: Grandfather window for one-time payments.
        cancel_revokes_access: When True a subscription flagged
            cancel-at-period-end is inactive even before the period ends.

    Returns:
        PremiumStatus; deterministic for a given (record, now).
    """
    if record is None:
        return NO_PREMIUM

    now = as_utc(now) if now is not None else utc_now()

    if record.provider_subscription_id:
        if record.subscription_status != SubscriptionStatusEnum.active.value:
            return NO_PREMIUM

        period_end = as_utc(record.current_period_end)
        cancelling = bool(record.cancel_at_period_end)

        if period_end is None:
            return PremiumStatus(has_premium=True, is_active=True)

        in_period = period_end > now
        is_active = in_period and not (cancelling and cancel_revokes_access)

        # Remaining days and next charge only make sense for a renewing period
        if in_period and not cancelling:
            return PremiumStatus(
                has_premium=True,
                is_active=is_active,
                days_remaining=_days_until(period_end, now),
                next_charge_date=period_end,
            )
        return PremiumStatus(
            has_premium=True,
            is_active=is_active,
            days_remaining=_days_until(period_end, now) if is_active else None,
        )

    if record.legacy_paid:
        payment_date = as_utc(record.payment_date)
        if payment_date is None:
            return PremiumStatus(has_premium=True, is_active=True)

        expires_at = payment_date + timedelta(days=legacy_window_days)
        is_active = now < expires_at
        return PremiumStatus(
            has_premium=True,
            is_active=is_active,
            days_remaining=_days_until(expires_at, now) if is_active else None,
        )

    return NO_PREMIUM


def compute_status_for(record, account_class, settings, now: Optional[datetime] = None) -> PremiumStatus:
    """`compute_status` with the class window and cancel rule taken from settings."""
    return compute_status(
        record,
        now=now,
        legacy_window_days=settings.legacy_window_days(account_class),
        cancel_revokes_access=settings.CANCEL_AT_PERIOD_END_REVOKES_ACCESS,
    )
