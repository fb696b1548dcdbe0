"""Stripe webhook receiver and recovery endpoints.

WHAT:
    - POST /webhooks/stripe: verifies the signature on the raw body and
      hands the event to the dispatcher.
    - POST /webhooks/stripe/replay: re-fetches a checkout session and re-runs
      checkout completion synchronously (operator recovery for missed
      webhooks).
    - GET /webhooks/stripe/sessions/{session_id}: provider payment status and
      metadata for a checkout session.

WHY:
    Stripe retries any non-2xx response. Once the signature is verified the
    receiver always answers 200 with the dispatcher's action, even when the
    handler failed; the failure is logged, reported to Sentry and recorded in
    the webhook ledger for replay.

REFERENCES:
    - tutor_billing/services/webhook_dispatcher.py
    - https://docs.stripe.com/webhooks
"""

import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import (
    get_notification_service,
    get_settings,
    get_stripe_client,
    require_admin_key,
)
from ..services.billing_store import BillingStoreError
from ..services.purchase_service import PurchaseNotFoundError
from ..services.stripe_client import StripeNotConfiguredError, WebhookVerificationError
from ..services.webhook_dispatcher import WebhookDispatcher, WebhookEvent

logger = logging.getLogger(__name__)

# Replay outcomes where nothing was applied, and the status reported for each
REPLAY_REJECTED_ACTIONS = {
    "invalid_metadata": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "missing_email": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "awaiting_payment": status.HTTP_409_CONFLICT,
    "skipped_subscription_exists": status.HTTP_409_CONFLICT,
}

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_dispatcher(
    db: Session = Depends(get_db),
    stripe_client=Depends(get_stripe_client),
    notifier=Depends(get_notification_service),
    settings=Depends(get_settings),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, stripe_client, notifier, settings)


@router.post("/stripe", response_model=schemas.WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_client=Depends(get_stripe_client),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Receive a Stripe event."""
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        stripe_client.verify_webhook(body, signature)
        # Verified; work from the raw JSON rather than the SDK object
        event = WebhookEvent.from_payload(json.loads(body))
    except WebhookVerificationError as e:
        logger.warning(f"[WEBHOOK] Signature verification failed: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")
    except ValueError as e:
        logger.warning(f"[WEBHOOK] Invalid payload: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    action = await dispatcher.dispatch(event)
    return schemas.WebhookResponse(event_type=event.type, action=action)


@router.post(
    "/stripe/replay",
    response_model=schemas.ManualReplayResponse,
    dependencies=[Depends(require_admin_key)],
)
async def replay_checkout_session(
    payload: schemas.ManualReplayRequest,
    stripe_client=Depends(get_stripe_client),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Re-run checkout completion for `session_id`.

    Unlike the webhook path, failures surface to the caller.
    """
    try:
        session = await stripe_client.retrieve_checkout_session(payload.session_id)
    except stripe.InvalidRequestError as e:
        logger.warning(f"[WEBHOOK] Replay: session {payload.session_id} not found: {e}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found")
    except (stripe.StripeError, StripeNotConfiguredError) as e:
        logger.error(f"[WEBHOOK] Replay: could not fetch session {payload.session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Billing provider unavailable")

    try:
        action = await dispatcher.handle_checkout_completed(session, type_hint=payload.type)
    except PurchaseNotFoundError as e:
        dispatcher.db.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (SQLAlchemyError, BillingStoreError) as e:
        dispatcher.db.rollback()
        logger.error(f"[WEBHOOK] Replay of {payload.session_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process session")

    if action in REPLAY_REJECTED_ACTIONS:
        logger.warning(f"[WEBHOOK] Replay of {payload.session_id} applied nothing: {action}")
        return JSONResponse(
            status_code=REPLAY_REJECTED_ACTIONS[action],
            content=schemas.ManualReplayResponse(
                success=False, session_id=payload.session_id, action=action
            ).model_dump(),
        )

    logger.info(f"[WEBHOOK] Replayed checkout {payload.session_id} -> {action}")
    return schemas.ManualReplayResponse(success=True, session_id=payload.session_id, action=action)


@router.get("/stripe/sessions/{session_id}", response_model=schemas.PaymentStatusResponse)
async def get_payment_status(session_id: str, stripe_client=Depends(get_stripe_client)):
    """Payment status and metadata of a checkout session, as Stripe reports them."""
    try:
        session = await stripe_client.retrieve_checkout_session(session_id)
    except stripe.InvalidRequestError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found")
    except (stripe.StripeError, StripeNotConfiguredError) as e:
        logger.error(f"[WEBHOOK] Payment status lookup failed for {session_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Billing provider unavailable")

    metadata = dict(session.get("metadata") or {})
    return schemas.PaymentStatusResponse(
        session_id=session_id,
        payment_status=session.get("payment_status"),
        status=session.get("status"),
        metadata=metadata,
        payment_type=metadata.get("type"),
    )
