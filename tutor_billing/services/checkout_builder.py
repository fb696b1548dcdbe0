"""Checkout session builder.

WHAT:
    Creates Stripe Checkout sessions for the four purchase types:
    - contact_purchase: one-time contact reveal on a connection request
    - teacher_purchase: one-time tutor-to-tutor post contact purchase
    - premium_subscription: recurring tutor premium
    - student_premium_subscription: recurring student premium

WHY:
    Webhooks arrive long after checkout with nothing but the metadata we
    attach here. The `type` discriminator and every field the dispatcher
    needs are embedded on the session AND (for subscriptions) on
    `subscription_data.metadata`, because Stripe does not copy session
    metadata onto the subscription.

CATALOG:
    `PriceCatalog` resolves the recurring price per offer. Pinned price ids
    from settings win; otherwise the product is searched by name and its
    active price used, creating both when missing. Results are cached with
    a TTL and can be invalidated explicitly (admin endpoint).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import stripe
from sqlalchemy.orm import Session

from ..models import AccountClassEnum
from .billing_store import attach_customer_id, get_billing_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PremiumOffer:
    account_class: AccountClassEnum
    product_name: str
    description: str


PREMIUM_OFFERS = {
    AccountClassEnum.tutor: PremiumOffer(
        account_class=AccountClassEnum.tutor,
        product_name="Premium Teaching Subscription",
        description="Monthly premium tutor profile with featured video content",
    ),
    AccountClassEnum.student: PremiumOffer(
        account_class=AccountClassEnum.student,
        product_name="Premium Student Subscription",
        description="Monthly premium student membership with priority tutor matching",
    ),
}


class CheckoutError(Exception):
    """Checkout could not be created (provider failure or bad input)."""


# =============================================================================
# PRICE CATALOG
# =============================================================================

class PriceCatalog:
    """TTL cache of recurring price ids per premium offer."""

    def __init__(self, stripe_client, settings, clock=time.monotonic):
        self.stripe_client = stripe_client
        self.settings = settings
        self.ttl_seconds = settings.PRICE_CACHE_TTL_SECONDS
        self._clock = clock
        self._entries: Dict[AccountClassEnum, Tuple[str, float]] = {}
        self._locks: Dict[AccountClassEnum, asyncio.Lock] = {}

    def _pinned(self, account_class: AccountClassEnum) -> Optional[str]:
        if account_class == AccountClassEnum.tutor:
            return self.settings.STRIPE_TUTOR_PREMIUM_PRICE_ID
        return self.settings.STRIPE_STUDENT_PREMIUM_PRICE_ID

    def invalidate(self, account_class: Optional[AccountClassEnum] = None) -> int:
        """Drop cached entries; returns how many were dropped."""
        if account_class is None:
            dropped = len(self._entries)
            self._entries.clear()
        else:
            dropped = 1 if self._entries.pop(AccountClassEnum(account_class), None) else 0
        logger.info(f"[CHECKOUT] Price catalog invalidated ({dropped} entries)")
        return dropped

    async def price_id(self, account_class) -> str:
        account_class = AccountClassEnum(account_class)
        pinned = self._pinned(account_class)
        if pinned:
            return pinned

        cached = self._entries.get(account_class)
        if cached and cached[1] > self._clock():
            return cached[0]

        lock = self._locks.setdefault(account_class, asyncio.Lock())
        async with lock:
            cached = self._entries.get(account_class)
            if cached and cached[1] > self._clock():
                return cached[0]

            price_id = await self._resolve(PREMIUM_OFFERS[account_class])
            self._entries[account_class] = (price_id, self._clock() + self.ttl_seconds)
            return price_id

    async def _resolve(self, offer: PremiumOffer) -> str:
        product = await self.stripe_client.find_active_product(offer.product_name)
        if product is None:
            product = await self.stripe_client.create_product(offer.product_name, offer.description)
            logger.info(f"[CHECKOUT] Created product {product['id']} for '{offer.product_name}'")

        price = await self.stripe_client.find_active_price(product["id"])
        if price is None:
            price = await self.stripe_client.create_recurring_price(
                product["id"],
                unit_amount=self.settings.PREMIUM_MONTHLY_PRICE_CENTS,
                currency=self.settings.BILLING_CURRENCY,
            )
            logger.info(f"[CHECKOUT] Created monthly price {price['id']} for '{offer.product_name}'")

        return price["id"]


# =============================================================================
# SESSION BUILDER
# =============================================================================

class CheckoutSessionBuilder:
    """Builds Stripe Checkout sessions with reconciliation metadata."""

    def __init__(self, db: Session, stripe_client, catalog: PriceCatalog, settings):
        self.db = db
        self.stripe_client = stripe_client
        self.catalog = catalog
        self.settings = settings

    @property
    def frontend_url(self) -> str:
        return self.settings.FRONTEND_URL.rstrip("/")

    async def resolve_customer_id(self, account_class, email: str, name: Optional[str] = None) -> str:
        """Stored customer id, else an existing Stripe customer by email, else a new one."""
        record = get_billing_record(self.db, account_class, email)
        if record is not None and record.provider_customer_id:
            return record.provider_customer_id

        customer = await self.stripe_client.find_customer_by_email(email)
        if customer is None:
            customer = await self.stripe_client.create_customer(email, name)
            logger.info(f"[CHECKOUT] Created Stripe customer {customer['id']} for {email}")

        attach_customer_id(self.db, account_class, email, customer["id"])
        return customer["id"]

    async def _create(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            session = await self.stripe_client.create_checkout_session(**params)
        except stripe.StripeError as e:
            logger.error(f"[CHECKOUT] Stripe rejected checkout ({params.get('metadata', {}).get('type')}): {e}")
            raise CheckoutError(str(e)) from e
        logger.info(f"[CHECKOUT] Created session {session['id']} type={params['metadata']['type']}")
        return {"session_id": session["id"], "url": session.get("url")}

    def _one_time_line_item(self, name: str, description: str, unit_amount: int) -> Dict[str, Any]:
        return {
            "price_data": {
                "currency": self.settings.BILLING_CURRENCY,
                "product_data": {"name": name, "description": description},
                "unit_amount": unit_amount,
            },
            "quantity": 1,
        }

    # -------------------------------------------------------------------------
    # One-time purchases
    # -------------------------------------------------------------------------

    async def contact_purchase(self, request_id: str, tutor_id: str, tutor_email: Optional[str] = None):
        metadata = {"type": "contact_purchase", "requestId": request_id, "teacherId": tutor_id}
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [self._one_time_line_item(
                "Student contact details",
                "Reveal contact information for a connection request",
                self.settings.CONTACT_PURCHASE_PRICE_CENTS,
            )],
            "metadata": metadata,
            "success_url": f"{self.frontend_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}&type=contact",
            "cancel_url": f"{self.frontend_url}/requests?canceled=true",
        }
        if tutor_email:
            params["customer_email"] = tutor_email
        return await self._create(params)

    async def tutor_purchase(self, student_post_id: str, tutor_id: str, student_id: str, tutor_email: Optional[str] = None):
        metadata = {
            "type": "teacher_purchase",
            "studentPostId": student_post_id,
            "teacherId": tutor_id,
            "studentId": student_id,
        }
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [self._one_time_line_item(
                "Student post contact",
                "Phone number access for a student post",
                self.settings.TUTOR_PURCHASE_PRICE_CENTS,
            )],
            "metadata": metadata,
            "success_url": f"{self.frontend_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}&type=purchase",
            "cancel_url": f"{self.frontend_url}/student-posts/{student_post_id}?canceled=true",
        }
        if tutor_email:
            params["customer_email"] = tutor_email
        return await self._create(params)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def _subscription(self, account_class: AccountClassEnum, email: str, name: Optional[str], metadata: Dict[str, str]):
        try:
            customer_id = await self.resolve_customer_id(account_class, email, name)
            price_id = await self.catalog.price_id(account_class)
        except stripe.StripeError as e:
            logger.error(f"[CHECKOUT] Could not prepare {account_class.value} subscription for {email}: {e}")
            raise CheckoutError(str(e)) from e

        params = {
            "mode": "subscription",
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": metadata,
            "subscription_data": {"metadata": dict(metadata)},
            "success_url": f"{self.frontend_url}/premium/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/premium?canceled=true",
        }
        return await self._create(params)

    async def tutor_premium(self, email: str, name: Optional[str] = None):
        metadata = {"type": "premium_subscription", "teacherEmail": email}
        if name:
            metadata["teacherName"] = name
        return await self._subscription(AccountClassEnum.tutor, email, name, metadata)

    async def student_premium(
        self,
        email: str,
        name: Optional[str] = None,
        subject: str = "",
        mobile: str = "",
        topic: str = "",
        description: str = "",
    ):
        metadata = {
            "type": "student_premium_subscription",
            "studentEmail": email,
            "subject": subject or "",
            "mobile": mobile or "",
            "topic": topic or "",
            # Stripe caps metadata values at 500 characters
            "description": (description or "")[:500],
        }
        if name:
            metadata["studentName"] = name
        return await self._subscription(AccountClassEnum.student, email, name, metadata)
