"""Tests for subscription metadata resolution and account classification."""

import asyncio
from unittest.mock import AsyncMock

import stripe

from tutor_billing.models import AccountClassEnum
from tutor_billing.services.metadata_resolver import (
    account_class_for,
    classify_subscription,
    resolve_subscription_metadata,
)


def test_own_metadata_returned_without_lookup(fake_stripe, make_subscription):
    subscription = make_subscription(metadata={"type": "premium_subscription", "teacherEmail": "t@x.com"})

    metadata = asyncio.run(resolve_subscription_metadata(fake_stripe, subscription))

    assert metadata["teacherEmail"] == "t@x.com"
    assert fake_stripe.count("list_sessions_for_subscription") == 0


def test_falls_back_to_checkout_session_metadata(fake_stripe, make_subscription):
    fake_stripe.sessions_by_subscription["sub_1"] = [
        {"id": "cs_1", "metadata": {"studentEmail": "a@b.com", "type": "student_premium_subscription"}}
    ]
    subscription = make_subscription(metadata={})

    metadata = asyncio.run(resolve_subscription_metadata(fake_stripe, subscription))

    assert metadata["studentEmail"] == "a@b.com"
    assert account_class_for(metadata) == AccountClassEnum.student


def test_unresolved_metadata_returns_original(fake_stripe, make_subscription):
    subscription = make_subscription(metadata={"campaign": "spring"})

    metadata = asyncio.run(resolve_subscription_metadata(fake_stripe, subscription))

    assert metadata == {"campaign": "spring"}
    assert account_class_for(metadata) == AccountClassEnum.tutor


def test_lookup_failure_returns_original(make_subscription):
    client = AsyncMock()
    client.list_sessions_for_subscription.side_effect = stripe.APIConnectionError("network down")

    metadata = asyncio.run(resolve_subscription_metadata(client, make_subscription(metadata={})))

    assert metadata == {}


def test_classify_student_from_session_fallback(fake_stripe, make_subscription):
    fake_stripe.sessions_by_subscription["sub_1"] = [{"id": "cs_1", "metadata": {"studentEmail": "a@b.com"}}]
    fake_stripe.customers["cus_1"] = {"id": "cus_1", "email": "billing@b.com"}

    classified = asyncio.run(classify_subscription(fake_stripe, make_subscription(metadata={})))

    assert classified.account_class == AccountClassEnum.student
    assert classified.account_email == "a@b.com"
    assert classified.resolved is True


def test_classify_tutor_uses_customer_email_when_metadata_lacks_it(fake_stripe, make_subscription):
    fake_stripe.customers["cus_1"] = {"id": "cus_1", "email": "t@x.com"}
    subscription = make_subscription(metadata={"type": "premium_subscription"})

    classified = asyncio.run(classify_subscription(fake_stripe, subscription))

    assert classified.account_class == AccountClassEnum.tutor
    assert classified.account_email == "t@x.com"


def test_classify_unresolved_defaults_to_tutor(fake_stripe, make_subscription):
    fake_stripe.customers["cus_1"] = {"id": "cus_1", "email": "someone@x.com"}

    classified = asyncio.run(classify_subscription(fake_stripe, make_subscription(metadata={})))

    assert classified.account_class == AccountClassEnum.tutor
    assert classified.resolved is False
    assert classified.account_email == "someone@x.com"


def test_student_form_only_for_students(fake_stripe, make_subscription):
    subscription = make_subscription(metadata={
        "type": "student_premium_subscription",
        "studentEmail": "a@b.com",
        "subject": "Physics",
        "topic": "",
    })

    classified = asyncio.run(classify_subscription(fake_stripe, subscription))

    assert classified.student_form() == {"subject": "Physics"}
