"""Subscription metadata resolution and account classification.

WHAT:
    - `resolve_subscription_metadata`: returns the checkout intent behind a
      subscription, falling back to the subscription's checkout session when
      the subscription's own metadata is empty.
    - `classify_subscription`: the single place that decides tutor vs. student
      and which email the billing record belongs to.

WHY:
    Stripe does not always propagate checkout-session metadata onto the
    subscription it creates. Every subscription/invoice handler needs the
    same answer, so the dispatcher resolves it once and hands handlers an
    already-classified subscription.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import stripe

from ..models import AccountClassEnum
from .billing_types import object_id

logger = logging.getLogger(__name__)


STUDENT_EMAIL_KEY = "studentEmail"
TUTOR_EMAIL_KEY = "teacherEmail"
STUDENT_SUBSCRIPTION_TYPE = "student_premium_subscription"

# Any of these means the metadata was written by our checkout builder
DISCRIMINATOR_KEYS = ("type", STUDENT_EMAIL_KEY, TUTOR_EMAIL_KEY)

# Student request-form fields carried through checkout metadata
STUDENT_FORM_KEYS = ("subject", "mobile", "topic", "description")


@dataclass
class ClassifiedSubscription:
    """A subscription with its account class and owning email resolved."""
    subscription: Mapping[str, Any]
    account_class: AccountClassEnum
    account_email: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = True

    @property
    def subscription_id(self) -> Optional[str]:
        return self.subscription.get("id")

    @property
    def customer_id(self) -> Optional[str]:
        return object_id(self.subscription.get("customer"))

    def student_form(self) -> Dict[str, Any]:
        if self.account_class != AccountClassEnum.student:
            return {}
        return {key: self.metadata[key] for key in STUDENT_FORM_KEYS if self.metadata.get(key)}


def _has_discriminator(metadata: Optional[Mapping[str, Any]]) -> bool:
    return bool(metadata) and any(metadata.get(key) for key in DISCRIMINATOR_KEYS)


async def resolve_subscription_metadata(stripe_client, subscription: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the subscription's metadata, or its checkout session's.

    Side-effect free; a failed fallback lookup returns the original metadata.
    """
    metadata = dict(subscription.get("metadata") or {})
    if _has_discriminator(metadata):
        return metadata

    subscription_id = subscription.get("id")
    if not subscription_id:
        return metadata

    try:
        sessions = await stripe_client.list_sessions_for_subscription(subscription_id, limit=1)
    except stripe.StripeError as e:
        logger.warning(f"[METADATA] Session lookup failed for {subscription_id}: {e}")
        return metadata

    if sessions:
        session_metadata = dict(sessions[0].get("metadata") or {})
        if session_metadata:
            logger.info(f"[METADATA] Using checkout session metadata for subscription {subscription_id}")
            return session_metadata

    return metadata


def account_class_for(metadata: Mapping[str, Any]) -> AccountClassEnum:
    """Student when a student-identifying field is present, otherwise tutor."""
    if metadata.get(STUDENT_EMAIL_KEY) or metadata.get("type") == STUDENT_SUBSCRIPTION_TYPE:
        return AccountClassEnum.student
    return AccountClassEnum.tutor


async def classify_subscription(stripe_client, subscription: Mapping[str, Any]) -> ClassifiedSubscription:
    """Resolve metadata, account class and account email for a subscription.

    Email preference: the email embedded at checkout, then the Stripe
    customer's email. `account_email` is None when neither is available.
    """
    metadata = await resolve_subscription_metadata(stripe_client, subscription)
    resolved = _has_discriminator(metadata)
    account_class = account_class_for(metadata)

    if not resolved:
        logger.warning(
            f"[METADATA] Unresolved metadata for subscription {subscription.get('id')}; "
            f"defaulting to {account_class.value}"
        )

    if account_class == AccountClassEnum.student:
        email = metadata.get(STUDENT_EMAIL_KEY)
    else:
        email = metadata.get(TUTOR_EMAIL_KEY)

    if not email:
        customer_id = object_id(subscription.get("customer"))
        if customer_id:
            try:
                customer = await stripe_client.retrieve_customer(customer_id)
                email = customer.get("email")
            except stripe.StripeError as e:
                logger.warning(f"[METADATA] Customer lookup failed for {customer_id}: {e}")

    return ClassifiedSubscription(
        subscription=subscription,
        account_class=account_class,
        account_email=email,
        metadata=metadata,
        resolved=resolved,
    )
