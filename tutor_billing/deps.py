"""Dependency providers and settings management."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AccountClassEnum
from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    FRONTEND_URL: str = "http://localhost:3000"
    ADMIN_SECRET_KEY: str = "supersecretkey-change-this-in-production"

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    # Pinned price ids skip the product search/create round-trip
    STRIPE_TUTOR_PREMIUM_PRICE_ID: Optional[str] = None
    STRIPE_STUDENT_PREMIUM_PRICE_ID: Optional[str] = None
    PRICE_CACHE_TTL_SECONDS: int = 3600

    # Pricing (minor units)
    BILLING_CURRENCY: str = "usd"
    PREMIUM_MONTHLY_PRICE_CENTS: int = 2900
    CONTACT_PURCHASE_PRICE_CENTS: int = 700
    TUTOR_PURCHASE_PRICE_CENTS: int = 500

    # Premium status rules
    LEGACY_TUTOR_WINDOW_DAYS: int = 365
    LEGACY_STUDENT_WINDOW_DAYS: int = 365
    CANCEL_AT_PERIOD_END_REVOKES_ACCESS: bool = True

    # Email (Resend)
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "Tutor Marketplace <billing@tutormarket.app>"

    # Telemetry
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def legacy_window_days(self, account_class) -> int:
        if AccountClassEnum(account_class) == AccountClassEnum.student:
            return self.LEGACY_STUDENT_WINDOW_DAYS
        return self.LEGACY_TUTOR_WINDOW_DAYS


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


# =============================================================================
# SERVICE SINGLETONS
# =============================================================================

@lru_cache()
def get_stripe_client():
    """Process-wide Stripe gateway built from settings."""
    from .services.stripe_client import StripeBillingClient
    return StripeBillingClient.from_settings(get_settings())


@lru_cache()
def get_notification_service():
    from .services.notification_service import BillingNotificationService
    return BillingNotificationService.from_settings(get_settings())


@lru_cache()
def get_price_catalog():
    from .services.checkout_builder import PriceCatalog
    settings = get_settings()
    return PriceCatalog(get_stripe_client(), settings)


# =============================================================================
# CALLER IDENTITY
# =============================================================================

@dataclass
class CurrentAccount:
    """The authenticated caller, as far as billing cares."""
    email: str
    account_class: AccountClassEnum


def get_current_account(authorization: Optional[str] = Header(default=None)) -> CurrentAccount:
    """Resolve the caller from an `Authorization: Bearer <jwt>` header.

    The token's `sub` is the account email, `role` is tutor or student.
    """
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    else:
        token = authorization

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in {c.value for c in AccountClassEnum}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    return CurrentAccount(email=subject, account_class=AccountClassEnum(role))


def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for operator endpoints (manual replay, cache invalidation)."""
    if not x_admin_key or x_admin_key != settings.ADMIN_SECRET_KEY:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin key required")
