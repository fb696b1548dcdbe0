"""Account-facing billing endpoints.

WHAT:
    - Premium status (derived on read) for tutors and students
    - Premium content update for tutors, gated on active premium
    - Checkout session creation for the four purchase types
    - Subscription cancel / reactivate / invoice history
    - Admin: price catalog invalidation

WHY:
    Everything here reads or writes through the same billing store and
    status calculator as the webhook handlers, so the account sees exactly
    the state the reconciliation engine maintains.
"""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    CurrentAccount,
    Settings,
    get_current_account,
    get_price_catalog,
    get_settings,
    get_stripe_client,
    require_admin_key,
)
from ..models import AccountClassEnum
from ..services import billing_store, subscription_service
from ..services.checkout_builder import CheckoutError, CheckoutSessionBuilder
from ..services.premium_status import compute_status_for
from ..services.stripe_client import StripeNotConfiguredError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def _require_class(account: CurrentAccount, account_class: AccountClassEnum) -> None:
    if account.account_class != account_class:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Only {account_class.value} accounts can use this endpoint",
        )


def _status_response(record, account: CurrentAccount, settings: Settings) -> schemas.PremiumStatusResponse:
    premium = compute_status_for(record, account.account_class, settings)
    return schemas.PremiumStatusResponse(
        account_email=account.email,
        account_class=account.account_class.value,
        has_premium=premium.has_premium,
        is_active=premium.is_active,
        days_remaining=premium.days_remaining,
        next_charge_date=premium.next_charge_date,
        subscription_status=record.subscription_status if record else None,
        current_period_end=record.current_period_end if record else None,
        cancel_at_period_end=bool(record.cancel_at_period_end) if record else False,
        legacy_paid=bool(record.legacy_paid) if record else False,
    )


def get_checkout_builder(
    db: Session = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
    catalog=Depends(get_price_catalog),
    settings: Settings = Depends(get_settings),
) -> CheckoutSessionBuilder:
    return CheckoutSessionBuilder(db, stripe_client, catalog, settings)


async def _checkout(coro) -> schemas.CheckoutCreateResponse:
    try:
        result = await coro
    except CheckoutError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Checkout failed: {e}")
    except StripeNotConfiguredError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing is not configured")
    return schemas.CheckoutCreateResponse(**result)


# =============================================================================
# PREMIUM STATUS
# =============================================================================

@router.get("/premium/tutor/status", response_model=schemas.PremiumStatusResponse)
async def get_tutor_premium_status(
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Tutor premium status; creates an empty record on first check."""
    _require_class(account, AccountClassEnum.tutor)
    record = billing_store.ensure_billing_record(db, AccountClassEnum.tutor, account.email)
    return _status_response(record, account, settings)


@router.get("/premium/student/status", response_model=schemas.PremiumStatusResponse)
async def get_student_premium_status(
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    _require_class(account, AccountClassEnum.student)
    record = billing_store.get_billing_record(db, AccountClassEnum.student, account.email)
    return _status_response(record, account, settings)


@router.put("/premium/tutor/content", response_model=schemas.TutorPremiumContentResponse)
async def update_tutor_premium_content(
    payload: schemas.TutorPremiumContentUpdate,
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Update premium links/videos. Requires active premium."""
    _require_class(account, AccountClassEnum.tutor)
    record = billing_store.get_billing_record(db, AccountClassEnum.tutor, account.email)
    premium = compute_status_for(record, AccountClassEnum.tutor, settings)
    if record is None or not premium.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Premium subscription required")

    record = billing_store.update_premium_content(db, record, payload.model_dump())
    logger.info(f"[BILLING] Premium content updated for {account.email}")
    return record


# =============================================================================
# CHECKOUT
# =============================================================================

@router.post("/checkout/tutor-premium", response_model=schemas.CheckoutCreateResponse)
async def create_tutor_premium_checkout(
    payload: schemas.TutorPremiumCheckoutRequest,
    account: CurrentAccount = Depends(get_current_account),
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
):
    _require_class(account, AccountClassEnum.tutor)
    return await _checkout(builder.tutor_premium(account.email, payload.name))


@router.post("/checkout/student-premium", response_model=schemas.CheckoutCreateResponse)
async def create_student_premium_checkout(
    payload: schemas.StudentPremiumCheckoutRequest,
    account: CurrentAccount = Depends(get_current_account),
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
):
    _require_class(account, AccountClassEnum.student)
    return await _checkout(builder.student_premium(
        account.email,
        name=payload.name,
        subject=payload.subject,
        mobile=payload.mobile,
        topic=payload.topic,
        description=payload.description,
    ))


@router.post("/checkout/contact-purchase", response_model=schemas.CheckoutCreateResponse)
async def create_contact_purchase_checkout(
    payload: schemas.ContactPurchaseCheckoutRequest,
    account: CurrentAccount = Depends(get_current_account),
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
):
    _require_class(account, AccountClassEnum.tutor)
    return await _checkout(builder.contact_purchase(payload.request_id, payload.tutor_id, account.email))


@router.post("/checkout/tutor-purchase", response_model=schemas.CheckoutCreateResponse)
async def create_tutor_purchase_checkout(
    payload: schemas.TutorPurchaseCheckoutRequest,
    account: CurrentAccount = Depends(get_current_account),
    builder: CheckoutSessionBuilder = Depends(get_checkout_builder),
):
    _require_class(account, AccountClassEnum.tutor)
    return await _checkout(builder.tutor_purchase(
        payload.student_post_id, payload.tutor_id, payload.student_id, account.email
    ))


# =============================================================================
# SUBSCRIPTION MANAGEMENT
# =============================================================================

async def _provider_call(coro):
    try:
        return await coro
    except subscription_service.NoSubscriptionError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except StripeNotConfiguredError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing is not configured")
    except stripe.StripeError as e:
        logger.error(f"[BILLING] Stripe call failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Billing provider error")


@router.post("/subscription/cancel", response_model=schemas.SubscriptionStateResponse)
async def cancel_my_subscription(
    payload: schemas.SubscriptionCancelRequest,
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    return await _provider_call(subscription_service.cancel_subscription(
        db, stripe_client, account.account_class, account.email, at_period_end=payload.at_period_end
    ))


@router.post("/subscription/reactivate", response_model=schemas.SubscriptionStateResponse)
async def reactivate_my_subscription(
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    return await _provider_call(subscription_service.reactivate_subscription(
        db, stripe_client, account.account_class, account.email
    ))


@router.get("/subscription/invoices", response_model=schemas.InvoiceListResponse)
async def list_my_invoices(
    account: CurrentAccount = Depends(get_current_account),
    db: Session = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
):
    invoices = await _provider_call(subscription_service.invoice_history(
        db, stripe_client, account.account_class, account.email
    ))
    return schemas.InvoiceListResponse(invoices=invoices)


# =============================================================================
# ADMIN
# =============================================================================

@router.post(
    "/admin/catalog/invalidate",
    response_model=schemas.CatalogInvalidateResponse,
    dependencies=[Depends(require_admin_key)],
)
async def invalidate_price_catalog(catalog=Depends(get_price_catalog)):
    """Drop cached product/price ids so the next checkout re-resolves them."""
    return schemas.CatalogInvalidateResponse(invalidated=catalog.invalidate())
