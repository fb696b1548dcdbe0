"""Account-initiated subscription management.

Cancel (at period end or immediately), reactivate, and invoice history.
Each provider mutation is written back through the billing store right away
so the account sees the new state before the corresponding webhook lands;
the webhook then converges to the same values.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from ..models import AccountClassEnum
from .billing_store import get_billing_record, upsert_billing_record
from .billing_types import from_unix, subscription_fields, to_amount

logger = logging.getLogger(__name__)


class NoSubscriptionError(Exception):
    """The account has no provider subscription (or customer) to act on."""


def _subscription_id(db: Session, account_class, email: str) -> str:
    record = get_billing_record(db, account_class, email)
    if record is None or not record.provider_subscription_id:
        raise NoSubscriptionError(f"No subscription found for {email}")
    return record.provider_subscription_id


async def cancel_subscription(db: Session, stripe_client, account_class, email: str, at_period_end: bool = True):
    """Cancel the account's subscription and persist the provider's answer."""
    account_class = AccountClassEnum(account_class)
    subscription_id = _subscription_id(db, account_class, email)

    if at_period_end:
        subscription = await stripe_client.modify_subscription(subscription_id, cancel_at_period_end=True)
    else:
        subscription = await stripe_client.cancel_subscription(subscription_id)

    logger.info(
        f"[BILLING] {account_class.value} {email} canceled {subscription_id} "
        f"({'at period end' if at_period_end else 'immediately'})"
    )
    return upsert_billing_record(db, account_class, subscription_fields(subscription, email))


async def reactivate_subscription(db: Session, stripe_client, account_class, email: str):
    """Undo a pending cancel-at-period-end."""
    account_class = AccountClassEnum(account_class)
    subscription_id = _subscription_id(db, account_class, email)

    subscription = await stripe_client.modify_subscription(subscription_id, cancel_at_period_end=False)
    logger.info(f"[BILLING] {account_class.value} {email} reactivated {subscription_id}")
    return upsert_billing_record(db, account_class, subscription_fields(subscription, email))


async def invoice_history(db: Session, stripe_client, account_class, email: str) -> List[Dict[str, Any]]:
    """Last 100 invoices for the account's Stripe customer."""
    record = get_billing_record(db, account_class, email)
    if record is None or not record.provider_customer_id:
        raise NoSubscriptionError(f"No billing customer found for {email}")

    invoices = await stripe_client.list_invoices(record.provider_customer_id, limit=100)
    return [
        {
            "id": invoice.get("id"),
            "number": invoice.get("number"),
            "amount": to_amount(invoice.get("amount_paid")),
            "currency": invoice.get("currency"),
            "status": invoice.get("status"),
            "created": from_unix(invoice.get("created")),
            "invoice_pdf": invoice.get("invoice_pdf"),
            "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        }
        for invoice in invoices
    ]
