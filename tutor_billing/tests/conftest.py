"""Pytest configuration for billing tests

WHAT: Provides shared fixtures for service-level and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, and a fake Stripe
REFERENCES:
    - tutor_billing/main.py: FastAPI application
    - tutor_billing/database.py: Database configuration
    - tutor_billing/deps.py: Dependency injection
    - tutor_billing/services/stripe_client.py: Gateway faked below
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Optional

import pytest
import stripe
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure repo root is in path
import sys
from pathlib import Path
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-key")


# ============================================================================
# Fake Stripe
# ============================================================================

def ts(dt: datetime) -> int:
    """Unix timestamp, as Stripe sends them."""
    return int(dt.timestamp())


class FakeStripeClient:
    """In-memory stand-in for StripeBillingClient.

    Tests seed `customers`, `subscriptions`, `sessions` and
    `sessions_by_subscription`; every call is appended to `calls`.
    """

    def __init__(self, webhook_secret: Optional[str] = "whsec_test_secret"):
        self.webhook_secret = webhook_secret
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.sessions_by_subscription: Dict[str, List[Dict[str, Any]]] = {}
        self.invoices: Dict[str, List[Dict[str, Any]]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.created_sessions: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []

    def _log(self, name, *args):
        self.calls.append((name,) + args)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def verify_webhook(self, payload, sig_header):
        from tutor_billing.services.stripe_client import StripeBillingClient
        StripeBillingClient(api_key="sk_test_dummy", webhook_secret=self.webhook_secret).verify_webhook(
            payload, sig_header
        )

    async def retrieve_customer(self, customer_id):
        self._log("retrieve_customer", customer_id)
        if customer_id not in self.customers:
            raise stripe.InvalidRequestError(f"No such customer: {customer_id}", param="id")
        return self.customers[customer_id]

    async def find_customer_by_email(self, email):
        self._log("find_customer_by_email", email)
        for customer in self.customers.values():
            if customer.get("email") == email:
                return customer
        return None

    async def create_customer(self, email, name=None):
        self._log("create_customer", email)
        customer = {"id": f"cus_{len(self.customers) + 1}", "email": email, "name": name}
        self.customers[customer["id"]] = customer
        return customer

    async def list_sessions_for_subscription(self, subscription_id, limit=1):
        self._log("list_sessions_for_subscription", subscription_id)
        return self.sessions_by_subscription.get(subscription_id, [])[:limit]

    async def retrieve_checkout_session(self, session_id):
        self._log("retrieve_checkout_session", session_id)
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", param="id")
        return self.sessions[session_id]

    async def create_checkout_session(self, **params):
        self._log("create_checkout_session", params.get("mode"))
        session_id = f"cs_test_{len(self.created_sessions) + 1}"
        self.created_sessions.append(params)
        return {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}"}

    async def retrieve_subscription(self, subscription_id):
        self._log("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise stripe.InvalidRequestError(f"No such subscription: {subscription_id}", param="id")
        return self.subscriptions[subscription_id]

    async def modify_subscription(self, subscription_id, **params):
        self._log("modify_subscription", subscription_id, params)
        subscription = self.subscriptions[subscription_id]
        subscription.update(params)
        return subscription

    async def cancel_subscription(self, subscription_id):
        self._log("cancel_subscription", subscription_id)
        subscription = self.subscriptions[subscription_id]
        subscription.update({
            "status": "canceled",
            "cancel_at_period_end": False,
            "canceled_at": ts(datetime.now(timezone.utc)),
        })
        return subscription

    async def list_invoices(self, customer_id, limit=100):
        self._log("list_invoices", customer_id)
        return self.invoices.get(customer_id, [])[:limit]

    async def find_active_product(self, name):
        self._log("find_active_product", name)
        for product in self.products.values():
            if product["name"] == name:
                return product
        return None

    async def find_active_price(self, product_id):
        self._log("find_active_price", product_id)
        for price in self.prices.values():
            if price["product"] == product_id:
                return price
        return None

    async def create_product(self, name, description):
        self._log("create_product", name)
        product = {"id": f"prod_{len(self.products) + 1}", "name": name, "description": description}
        self.products[product["id"]] = product
        return product

    async def create_recurring_price(self, product_id, unit_amount, currency, interval="month"):
        self._log("create_recurring_price", product_id, unit_amount)
        price = {
            "id": f"price_{len(self.prices) + 1}",
            "product": product_id,
            "unit_amount": unit_amount,
            "currency": currency,
            "recurring": {"interval": interval},
        }
        self.prices[price["id"]] = price
        return price


class RecordingNotifier:
    """Notification service double that records instead of scheduling sends."""

    def __init__(self):
        self.sent: List[tuple] = []

    def _record(self, kind, **kwargs):
        self.sent.append((kind, kwargs))

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.sent]

    def payment_succeeded(self, **kwargs):
        self._record("payment_succeeded", **kwargs)

    def payment_failed(self, **kwargs):
        self._record("payment_failed", **kwargs)

    def subscription_canceled(self, **kwargs):
        self._record("subscription_canceled", **kwargs)

    def one_time_purchase(self, **kwargs):
        self._record("one_time_purchase", **kwargs)

    def tutor_purchase(self, **kwargs):
        self._record("tutor_purchase", **kwargs)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: TestClient runs the app in another thread, same connection needed
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from tutor_billing.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def settings():
    from tutor_billing.deps import Settings
    return Settings(
        FRONTEND_URL="https://tutors.example.com",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET="whsec_test_secret",
        ADMIN_SECRET_KEY="test-admin-key",
        RESEND_API_KEY=None,
        SENTRY_DSN=None,
    )


@pytest.fixture
def fake_stripe():
    return FakeStripeClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(test_db_session, fake_stripe, notifier, settings):
    from tutor_billing.services.webhook_dispatcher import WebhookDispatcher
    return WebhookDispatcher(test_db_session, fake_stripe, notifier, settings)


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, fake_stripe, notifier, settings):
    """Create FastAPI test application with DB, Stripe and email overridden."""
    from tutor_billing.main import create_app
    from tutor_billing.database import get_db
    from tutor_billing.deps import (
        get_notification_service,
        get_price_catalog,
        get_settings,
        get_stripe_client,
    )
    from tutor_billing.services.checkout_builder import PriceCatalog

    test_app = create_app()

    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    catalog = PriceCatalog(fake_stripe, settings)

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_stripe_client] = lambda: fake_stripe
    test_app.dependency_overrides[get_notification_service] = lambda: notifier
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_price_catalog] = lambda: catalog

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Authentication Fixtures
# ============================================================================

@pytest.fixture
def tutor_headers():
    from tutor_billing.security import create_access_token
    return {"Authorization": f"Bearer {create_access_token('t@x.com', 'tutor')}"}


@pytest.fixture
def student_headers():
    from tutor_billing.security import create_access_token
    return {"Authorization": f"Bearer {create_access_token('a@b.com', 'student')}"}


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": "test-admin-key"}


# ============================================================================
# Payload Builders
# ============================================================================

@pytest.fixture
def make_subscription(now):
    """Build a Stripe subscription dict (period fields on the subscription)."""
    def _make(
        sub_id="sub_1",
        customer="cus_1",
        status="active",
        metadata=None,
        period_days=30,
        cancel_at_period_end=False,
        canceled_at=None,
    ):
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "metadata": metadata or {},
            "current_period_start": ts(now),
            "current_period_end": ts(now + timedelta(days=period_days)),
            "cancel_at_period_end": cancel_at_period_end,
            "canceled_at": canceled_at,
        }
    return _make


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(event_type, data_object, event_id=None):
        from tutor_billing.services.webhook_dispatcher import WebhookEvent
        counter["n"] += 1
        return WebhookEvent(
            id=event_id or f"evt_{counter['n']}",
            type=event_type,
            data_object=data_object,
        )
    return _make
