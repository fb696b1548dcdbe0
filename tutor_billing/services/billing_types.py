"""Typed views over Stripe webhook payloads.

WHAT:
    - Checkout metadata variants as a pydantic tagged union, keyed on the
      `type` field embedded at checkout creation.
    - `BillingFields`: the sparse field set the billing store upserts.
    - Helpers that read subscription/invoice fields across Stripe API
      versions (period fields moved onto subscription items, invoice
      subscription ids moved under `parent.subscription_details`).

WHY:
    One checkout event carries different shapes depending on the purchase
    type. Parsing once at the dispatcher boundary means handlers receive a
    validated variant instead of poking at an untyped dict.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# =============================================================================
# CHECKOUT METADATA VARIANTS
# =============================================================================

class _CheckoutMetadata(BaseModel):
    # Stripe metadata values are always strings; unknown keys are tolerated
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ContactPurchase(_CheckoutMetadata):
    """Tutor pays to reveal a student's contact details on a connection request."""
    type: Literal["contact_purchase"]
    request_id: str = Field(alias="requestId", min_length=1)
    teacher_id: str = Field(alias="teacherId", min_length=1)


class TeacherPremiumSubscription(_CheckoutMetadata):
    type: Literal["premium_subscription"]
    teacher_email: Optional[str] = Field(default=None, alias="teacherEmail")
    teacher_name: Optional[str] = Field(default=None, alias="teacherName")


class StudentPremiumSubscription(_CheckoutMetadata):
    type: Literal["student_premium_subscription"]
    student_email: Optional[str] = Field(default=None, alias="studentEmail")
    student_name: Optional[str] = Field(default=None, alias="studentName")
    subject: str = ""
    mobile: str = ""
    topic: str = ""
    description: str = ""


class TeacherPurchase(_CheckoutMetadata):
    """One tutor buys access to a student post's phone number."""
    type: Literal["teacher_purchase"]
    student_post_id: str = Field(alias="studentPostId", min_length=1)
    teacher_id: str = Field(alias="teacherId", min_length=1)
    student_id: str = Field(alias="studentId", min_length=1)


CheckoutMetadata = Annotated[
    Union[ContactPurchase, TeacherPremiumSubscription, StudentPremiumSubscription, TeacherPurchase],
    Field(discriminator="type"),
]

_checkout_metadata_adapter = TypeAdapter(CheckoutMetadata)



def parse_checkout_metadata(metadata: Optional[Mapping[str, Any]]):
    """Validate checkout metadata into its variant.

    Raises:
        pydantic.ValidationError: unknown `type` or missing required fields.
    """
    return _checkout_metadata_adapter.validate_python(dict(metadata or {}))


# =============================================================================
# STORE INPUT
# =============================================================================

@dataclass
class BillingFields:
    """Fields for one billing-record upsert.

    None means "not provided": the store leaves the existing column alone.
    `cancel_at_period_end` is always written.
    """
    account_email: str
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    payment_date: Optional[datetime] = None
    payment_amount: Optional[Decimal] = None
    provider_session_id: Optional[str] = None
    # Class-specific columns (student request form)
    extra: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def from_unix(value: Optional[Union[int, float]]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_amount(minor_units: Optional[int]) -> Optional[Decimal]:
    """Stripe amounts are integer cents."""
    if minor_units is None:
        return None
    return (Decimal(minor_units) / Decimal(100)).quantize(Decimal("0.01"))


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_period(subscription: Mapping[str, Any]):
    """Return (period_start, period_end) as aware datetimes.

    Newer API versions only carry the period on subscription items.
    """
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return from_unix(start), from_unix(end)


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    sub = details.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    return None


def object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def subscription_fields(
    subscription: Mapping[str, Any],
    account_email: str,
) -> BillingFields:
    """Map a Stripe subscription onto the store's field set."""
    period_start, period_end = subscription_period(subscription)
    return BillingFields(
        account_email=account_email,
        provider_customer_id=object_id(subscription.get("customer")),
        provider_subscription_id=subscription.get("id"),
        subscription_status=subscription.get("status"),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=from_unix(subscription.get("canceled_at")),
    )
