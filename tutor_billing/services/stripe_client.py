"""Stripe gateway.

WHAT:
    Thin async wrapper over the `stripe` library for every provider call the
    billing core makes: webhook verification, customers, checkout sessions,
    subscriptions, invoices and the premium product/price catalog.

WHY:
    - One seam to fake in tests (see tests/conftest.py FakeStripeClient).
    - The API key is passed per call instead of mutating `stripe.api_key`.
    - Webhook verification fails closed when no signing secret is configured.
    - Responses leave the gateway as plain dicts. `StripeObject` is not a
      dict in current SDK releases, and every caller reads payloads with
      `.get()` the same way it reads webhook bodies.

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-official-libraries
    - https://github.com/stripe/stripe-python#async
"""

import logging
from typing import Any, Dict, List, Optional

import stripe

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Signature missing/invalid, secret not configured, or payload unparseable."""


class StripeNotConfiguredError(RuntimeError):
    """Raised when an outbound call is attempted without STRIPE_SECRET_KEY."""


def _plain(obj: Any) -> Optional[Dict[str, Any]]:
    """Recursively convert an SDK object to a dict."""
    if obj is None:
        return None
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


def _items(result: Any) -> List[Dict[str, Any]]:
    """Plain dicts for the `data` page of a list/search result."""
    data = getattr(result, "data", None) or []
    return [_plain(item) for item in data]


class StripeBillingClient:
    """Async Stripe gateway.

    Usage:
        client = StripeBillingClient.from_settings(get_settings())
        subscription = await client.retrieve_subscription("sub_123")
    """

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings) -> "StripeBillingClient":
        if not settings.STRIPE_SECRET_KEY:
            logger.warning("[STRIPE] STRIPE_SECRET_KEY not set; outbound provider calls will fail")
        if not settings.STRIPE_WEBHOOK_SECRET:
            logger.warning("[STRIPE] STRIPE_WEBHOOK_SECRET not set; webhook verification will reject all events")
        return cls(api_key=settings.STRIPE_SECRET_KEY, webhook_secret=settings.STRIPE_WEBHOOK_SECRET)

    def _key(self) -> str:
        if not self.api_key:
            raise StripeNotConfiguredError("STRIPE_SECRET_KEY is not configured")
        return self.api_key

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def verify_webhook(self, payload: bytes, sig_header: Optional[str]) -> None:
        """Verify the Stripe-Signature header against the raw body.

        Raises:
            WebhookVerificationError: on any failure, including a missing secret.
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret not configured")
        if not sig_header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Invalid signature: {e}") from e
        except ValueError as e:
            raise WebhookVerificationError(f"Invalid payload: {e}") from e

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return _plain(await stripe.Customer.retrieve_async(customer_id, api_key=self._key()))

    async def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        result = await stripe.Customer.list_async(email=email, limit=1, api_key=self._key())
        data = _items(result)
        return data[0] if data else None

    async def create_customer(self, email: str, name: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"email": email}
        if name:
            params["name"] = name
        return _plain(await stripe.Customer.create_async(api_key=self._key(), **params))

    # =========================================================================
    # CHECKOUT SESSIONS
    # =========================================================================

    async def list_sessions_for_subscription(self, subscription_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        result = await stripe.checkout.Session.list_async(
            subscription=subscription_id, limit=limit, api_key=self._key()
        )
        return _items(result)

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return _plain(await stripe.checkout.Session.retrieve_async(session_id, api_key=self._key()))

    async def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        return _plain(await stripe.checkout.Session.create_async(api_key=self._key(), **params))

    # =========================================================================
    # SUBSCRIPTIONS & INVOICES
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _plain(await stripe.Subscription.retrieve_async(subscription_id, api_key=self._key()))

    async def modify_subscription(self, subscription_id: str, **params: Any) -> Dict[str, Any]:
        return _plain(await stripe.Subscription.modify_async(subscription_id, api_key=self._key(), **params))

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return _plain(await stripe.Subscription.cancel_async(subscription_id, api_key=self._key()))

    async def list_invoices(self, customer_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        result = await stripe.Invoice.list_async(customer=customer_id, limit=limit, api_key=self._key())
        return _items(result)

    # =========================================================================
    # CATALOG
    # =========================================================================

    async def find_active_product(self, name: str) -> Optional[Dict[str, Any]]:
        query = f'name:"{name}" AND active:"true"'
        result = await stripe.Product.search_async(query=query, limit=1, api_key=self._key())
        data = _items(result)
        return data[0] if data else None

    async def find_active_price(self, product_id: str) -> Optional[Dict[str, Any]]:
        result = await stripe.Price.list_async(product=product_id, active=True, limit=1, api_key=self._key())
        data = _items(result)
        return data[0] if data else None

    async def create_product(self, name: str, description: str) -> Dict[str, Any]:
        return _plain(await stripe.Product.create_async(name=name, description=description, api_key=self._key()))

    async def create_recurring_price(
        self,
        product_id: str,
        unit_amount: int,
        currency: str,
        interval: str = "month",
    ) -> Dict[str, Any]:
        price = await stripe.Price.create_async(
            product=product_id,
            unit_amount=unit_amount,
            currency=currency,
            recurring={"interval": interval},
            api_key=self._key(),
        )
        return _plain(price)
