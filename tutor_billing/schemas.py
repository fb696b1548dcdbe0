"""Pydantic schemas for request and response bodies.

These schemas define the billing API contracts and generate the OpenAPI docs.
Field descriptions double as documentation for the frontend.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


# =============================================================================
# WEBHOOKS
# =============================================================================

class WebhookResponse(BaseModel):
    """Response returned to Stripe for every verified delivery.

    WHAT: Acknowledges receipt, regardless of handler outcome
    WHY: Non-2xx responses make Stripe retry; application errors must not
         turn into retry storms
    """

    received: bool = True
    event_type: Optional[str] = Field(None, description="Stripe event type")
    action: Optional[str] = Field(None, description="Action taken (processed, ignored, error, ...)")


class ManualReplayRequest(BaseModel):
    """Re-run checkout completion for a session whose webhook was missed."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId", min_length=1, description="Stripe checkout session id")
    type: Optional[str] = Field(None, description="Purchase type, used when the session has no type metadata")


class ManualReplayResponse(BaseModel):
    success: bool
    session_id: str
    action: str


class PaymentStatusResponse(BaseModel):
    """Provider payment status for a checkout session, verbatim."""

    session_id: str
    payment_status: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    payment_type: Optional[str] = Field(None, description="The `type` metadata tag, when present")


# =============================================================================
# PREMIUM STATUS & CONTENT
# =============================================================================

class PremiumStatusResponse(BaseModel):
    """Derived premium status for the calling account.

    WHAT: Computed on read from the stored billing record
    WHY: Frontend gates premium-only features on `is_active`
    """

    account_email: str
    account_class: Literal["tutor", "student"]
    has_premium: bool
    is_active: bool
    days_remaining: Optional[int] = None
    next_charge_date: Optional[datetime] = None
    subscription_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    legacy_paid: bool = False


class TutorPremiumContentUpdate(BaseModel):
    """Premium tutor content: either three links or three uploaded videos."""

    link_or_video: bool = Field(True, description="True for links, False for uploaded videos")
    link1: Optional[str] = None
    link2: Optional[str] = None
    link3: Optional[str] = None
    video1: Optional[str] = None
    video2: Optional[str] = None
    video3: Optional[str] = None


class TutorPremiumContentResponse(BaseModel):
    link_or_video: bool
    link1: Optional[str] = None
    link2: Optional[str] = None
    link3: Optional[str] = None
    video1: Optional[str] = None
    video2: Optional[str] = None
    video3: Optional[str] = None

    model_config = {"from_attributes": True}


# =============================================================================
# CHECKOUT
# =============================================================================

class CheckoutCreateResponse(BaseModel):
    """Stripe Checkout session to redirect the user to."""

    session_id: str = Field(description="Stripe checkout session id")
    url: Optional[str] = Field(None, description="Hosted checkout page URL")


class TutorPremiumCheckoutRequest(BaseModel):
    name: Optional[str] = Field(None, description="Display name shown on the Stripe customer")


class StudentPremiumCheckoutRequest(BaseModel):
    name: Optional[str] = None
    subject: str = ""
    mobile: str = ""
    topic: str = ""
    description: str = ""


class ContactPurchaseCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1)
    tutor_id: str = Field(alias="teacherId", min_length=1)


class TutorPurchaseCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_post_id: str = Field(alias="studentPostId", min_length=1)
    tutor_id: str = Field(alias="teacherId", min_length=1)
    student_id: str = Field(alias="studentId", min_length=1)


class CatalogInvalidateResponse(BaseModel):
    invalidated: int


# =============================================================================
# SUBSCRIPTION MANAGEMENT
# =============================================================================

class SubscriptionCancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    at_period_end: bool = Field(True, alias="atPeriodEnd", description="False cancels immediately")


class SubscriptionStateResponse(BaseModel):
    provider_subscription_id: Optional[str] = None
    subscription_status: str
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class InvoiceItem(BaseModel):
    id: str
    number: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    created: Optional[datetime] = None
    invoice_pdf: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceItem]
