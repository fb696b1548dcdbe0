"""Tests for the Stripe gateway against SDK response objects.

The SDK's async methods are patched to return `construct_from` objects, the
same types a live API call yields, so callers see what production sees.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from tutor_billing.models import StudentPremium
from tutor_billing.services.billing_store import get_billing_record
from tutor_billing.services.stripe_client import StripeBillingClient, WebhookVerificationError
from tutor_billing.services.webhook_dispatcher import WebhookDispatcher
from tutor_billing.tests.conftest import ts


API_KEY = "sk_test_dummy"
TUTOR_METADATA = {"type": "premium_subscription", "teacherEmail": "t@x.com"}


def _list(items, url="/v1/checkout/sessions"):
    return stripe.ListObject.construct_from(
        {"object": "list", "data": items, "has_more": False, "url": url}, API_KEY
    )


@pytest.fixture
def gateway():
    return StripeBillingClient(api_key=API_KEY, webhook_secret="whsec_test_secret")


@pytest.fixture
def live_dispatcher(test_db_session, gateway, notifier, settings):
    return WebhookDispatcher(test_db_session, gateway, notifier, settings)


# ============================================================================
# Conversion
# ============================================================================

def test_retrieve_subscription_returns_plain_dict(gateway, make_subscription):
    sdk_subscription = stripe.Subscription.construct_from(make_subscription(metadata=TUTOR_METADATA), API_KEY)

    with patch("stripe.Subscription.retrieve_async", new=AsyncMock(return_value=sdk_subscription)):
        subscription = asyncio.run(gateway.retrieve_subscription("sub_1"))

    assert isinstance(subscription, dict)
    assert isinstance(subscription["metadata"], dict)
    assert subscription.get("metadata").get("teacherEmail") == "t@x.com"


def test_list_sessions_returns_dicts(gateway):
    sessions = _list([{"id": "cs_1", "object": "checkout.session", "metadata": {"type": "premium_subscription"}}])

    with patch("stripe.checkout.Session.list_async", new=AsyncMock(return_value=sessions)):
        result = asyncio.run(gateway.list_sessions_for_subscription("sub_1"))

    assert result == [{"id": "cs_1", "object": "checkout.session", "metadata": {"type": "premium_subscription"}}]


def test_find_customer_by_email_empty_page(gateway):
    with patch("stripe.Customer.list_async", new=AsyncMock(return_value=_list([], url="/v1/customers"))):
        assert asyncio.run(gateway.find_customer_by_email("nobody@x.com")) is None


def test_find_active_product_from_search_result(gateway):
    result = stripe.SearchResultObject.construct_from(
        {"object": "search_result", "data": [{"id": "prod_1", "object": "product", "name": "Tutor Premium"}]},
        API_KEY,
    )

    with patch("stripe.Product.search_async", new=AsyncMock(return_value=result)):
        product = asyncio.run(gateway.find_active_product("Tutor Premium"))

    assert product == {"id": "prod_1", "object": "product", "name": "Tutor Premium"}


def test_create_checkout_session_exposes_url(gateway):
    session = stripe.checkout.Session.construct_from(
        {"id": "cs_new", "object": "checkout.session", "url": "https://checkout.stripe.com/c/pay/cs_new"}, API_KEY
    )

    with patch("stripe.checkout.Session.create_async", new=AsyncMock(return_value=session)) as create:
        result = asyncio.run(gateway.create_checkout_session(mode="subscription"))

    assert result.get("url") == "https://checkout.stripe.com/c/pay/cs_new"
    assert create.await_args.kwargs["api_key"] == API_KEY


def test_verify_webhook_without_secret_fails_closed():
    gateway = StripeBillingClient(api_key=API_KEY, webhook_secret=None)
    with pytest.raises(WebhookVerificationError):
        gateway.verify_webhook(b"{}", "t=1,v1=abc")


# ============================================================================
# Dispatch through the real gateway
# ============================================================================

def test_renewal_invoice_with_sdk_subscription(live_dispatcher, make_subscription, make_event, test_db_session, now):
    subscription = make_subscription(metadata=TUTOR_METADATA)
    invoice = {
        "id": "in_1",
        "object": "invoice",
        "subscription": "sub_1",
        "billing_reason": "subscription_cycle",
        "amount_paid": 3100,
        "currency": "usd",
        "created": ts(now),
    }

    with patch("stripe.checkout.Session.list_async", new=AsyncMock(return_value=_list([]))), \
            patch(
                "stripe.Subscription.retrieve_async",
                new=AsyncMock(return_value=stripe.Subscription.construct_from(subscription, API_KEY)),
            ):
        asyncio.run(live_dispatcher.dispatch(make_event("customer.subscription.created", subscription)))
        action = asyncio.run(live_dispatcher.dispatch(make_event("invoice.payment_succeeded", invoice)))

    assert action == "processed"
    record = get_billing_record(test_db_session, "tutor", "t@x.com")
    assert record.payment_amount == Decimal("31.00")


def test_student_fallback_with_sdk_session_list(live_dispatcher, make_subscription, make_event, test_db_session):
    sessions = _list([{
        "id": "cs_s",
        "object": "checkout.session",
        "amount_total": 2900,
        "metadata": {"type": "student_premium_subscription", "studentEmail": "a@b.com", "subject": "Chemistry"},
    }])
    subscription = make_subscription(sub_id="sub_s", customer="cus_s", metadata={})

    with patch("stripe.checkout.Session.list_async", new=AsyncMock(return_value=sessions)):
        action = asyncio.run(live_dispatcher.dispatch(make_event("customer.subscription.created", subscription)))

    assert action == "processed"
    record = get_billing_record(test_db_session, "student", "a@b.com")
    assert isinstance(record, StudentPremium)
    assert record.subject == "Chemistry"
    assert record.payment_amount == Decimal("29.00")
