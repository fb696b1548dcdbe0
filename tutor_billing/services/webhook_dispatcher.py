"""Stripe webhook event dispatcher.

WHAT:
    Routes verified Stripe events to their handlers and reconciles the local
    premium records with the provider's state.

EVENTS HANDLED:
    - checkout.session.completed: one-time purchases (contact reveal, tutor
      purchase, legacy premium). Subscription-mode premium checkouts are a
      no-op here; customer.subscription.created owns that write.
    - customer.subscription.created: full upsert plus session back-fill
      (session id, original amount)
    - customer.subscription.updated: status/period/cancel flag upsert
    - customer.subscription.deleted: force canceled, notify
    - invoice.payment_succeeded: renewal payment metadata, notify
    - invoice.payment_failed: past_due/unpaid per live subscription, notify

ERROR BOUNDARY:
    `dispatch()` never raises. A failing handler is rolled back, logged,
    reported to Sentry and turned into the "error" action, so the receiver
    still answers 200 and Stripe does not retry a poisoned event forever.
    Recovery is via the manual replay endpoint.

ACCOUNT CLASS:
    Resolved exactly once per event, in `_classify()`, through the metadata
    resolver. Handlers receive a ClassifiedSubscription and never look at raw
    metadata to decide tutor vs. student.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import stripe
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..models import AccountClassEnum, SubscriptionStatusEnum
from ..telemetry import capture_exception
from .billing_store import record_legacy_payment, upsert_billing_record
from .billing_types import (
    ContactPurchase,
    StudentPremiumSubscription,
    TeacherPremiumSubscription,
    TeacherPurchase,
    from_unix,
    invoice_subscription_id,
    object_id,
    parse_checkout_metadata,
    subscription_fields,
    subscription_period,
    to_amount,
)
from .metadata_resolver import ClassifiedSubscription, classify_subscription
from .premium_status import utc_now
from .purchase_service import (
    display_name,
    purchase_connection_request,
    record_tutor_purchase,
    tutor_email,
)
from .webhook_ledger import record_event

logger = logging.getLogger(__name__)


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.payment_succeeded"
INVOICE_FAILED = "invoice.payment_failed"

HANDLED_EVENTS = (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAID,
    INVOICE_FAILED,
)


@dataclass
class WebhookEvent:
    """Typed envelope of a verified Stripe event."""
    id: str
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WebhookEvent":
        """Build from the parsed JSON body.

        Raises:
            ValueError: the body is not a Stripe event envelope.
        """
        event_id = payload.get("id")
        event_type = payload.get("type")
        data_object = (payload.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(data_object, dict):
            raise ValueError("Malformed event envelope")
        return cls(id=event_id, type=event_type, data_object=data_object)


class WebhookDispatcher:
    """Routes Stripe events to reconciliation handlers.

    Usage:
        dispatcher = WebhookDispatcher(db, stripe_client, notifier, settings)
        action = await dispatcher.dispatch(event)
    """

    def __init__(self, db: Session, stripe_client, notifier, settings):
        self.db = db
        self.stripe_client = stripe_client
        self.notifier = notifier
        self.settings = settings

    @property
    def currency(self) -> str:
        return self.settings.BILLING_CURRENCY

    # =========================================================================
    # ENTRYPOINT
    # =========================================================================

    async def dispatch(self, event: WebhookEvent) -> str:
        """Process one event; returns the action taken. Never raises."""
        logger.info(f"[WEBHOOK] Dispatching {event.type} ({event.id})")
        try:
            action = await self._route(event)
        except Exception as e:
            self.db.rollback()
            logger.error(f"[WEBHOOK] Handler for {event.type} ({event.id}) failed: {e}", exc_info=True)
            capture_exception(e, extra={
                "event_id": event.id,
                "event_type": event.type,
                "object_id": event.data_object.get("id"),
            })
            action = "error"

        record_event(self.db, event.id, event.type, event.data_object.get("id"), action)
        logger.info(f"[WEBHOOK] {event.type} ({event.id}) -> {action}")
        return action

    async def _route(self, event: WebhookEvent) -> str:
        if event.type not in HANDLED_EVENTS:
            logger.debug(f"[WEBHOOK] Unhandled event type: {event.type}")
            return "ignored"

        obj = event.data_object

        if event.type == CHECKOUT_COMPLETED:
            return await self.handle_checkout_completed(obj)

        if event.type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
            classified = await self._classify(obj)
            if classified is None:
                return "missing_email"
            if event.type == SUBSCRIPTION_CREATED:
                return await self.on_subscription_created(classified)
            if event.type == SUBSCRIPTION_UPDATED:
                return await self.on_subscription_updated(classified)
            return await self.on_subscription_deleted(classified)

        if event.type in (INVOICE_PAID, INVOICE_FAILED):
            subscription_id = invoice_subscription_id(obj)
            if not subscription_id:
                logger.info(f"[WEBHOOK] Invoice {obj.get('id')} has no subscription; ignoring")
                return "ignored"
            subscription = await self.stripe_client.retrieve_subscription(subscription_id)
            classified = await self._classify(subscription)
            if classified is None:
                return "missing_email"
            if event.type == INVOICE_PAID:
                return await self.on_invoice_paid(obj, classified)
            return await self.on_invoice_failed(obj, classified)

        return "ignored"

    async def _classify(self, subscription: Mapping[str, Any]) -> Optional[ClassifiedSubscription]:
        classified = await classify_subscription(self.stripe_client, subscription)
        if not classified.account_email:
            logger.error(
                f"[WEBHOOK] No account email for subscription {subscription.get('id')} "
                f"(customer={object_id(subscription.get('customer'))}); dropping event"
            )
            return None
        return classified

    def _name(self, classified: ClassifiedSubscription) -> str:
        return display_name(self.db, classified.account_class, classified.account_email)

    # =========================================================================
    # SUBSCRIPTION LIFECYCLE
    # =========================================================================

    async def _session_backfill(self, subscription_id: str):
        """(session_id, amount) of the checkout that created the subscription."""
        try:
            sessions = await self.stripe_client.list_sessions_for_subscription(subscription_id, limit=1)
        except stripe.StripeError as e:
            logger.warning(f"[WEBHOOK] Session back-fill lookup failed for {subscription_id}: {e}")
            return None, None
        if not sessions:
            return None, None
        session = sessions[0]
        return session.get("id"), to_amount(session.get("amount_total"))

    async def on_subscription_created(self, classified: ClassifiedSubscription) -> str:
        subscription = classified.subscription
        fields = subscription_fields(subscription, classified.account_email)
        fields.payment_date = fields.current_period_start or utc_now()
        fields.provider_session_id, fields.payment_amount = await self._session_backfill(subscription["id"])
        fields.extra = classified.student_form()

        upsert_billing_record(self.db, classified.account_class, fields)
        return "processed"

    async def on_subscription_updated(self, classified: ClassifiedSubscription) -> str:
        fields = subscription_fields(classified.subscription, classified.account_email)
        fields.extra = classified.student_form()

        upsert_billing_record(self.db, classified.account_class, fields)
        return "processed"

    async def on_subscription_deleted(self, classified: ClassifiedSubscription) -> str:
        subscription = classified.subscription
        fields = subscription_fields(subscription, classified.account_email)
        fields.subscription_status = SubscriptionStatusEnum.canceled.value
        fields.cancel_at_period_end = False
        fields.canceled_at = from_unix(subscription.get("canceled_at")) or utc_now()

        upsert_billing_record(self.db, classified.account_class, fields)

        self.notifier.subscription_canceled(
            to=classified.account_email,
            name=self._name(classified),
            access_until=fields.current_period_end,
        )
        return "processed"

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def on_invoice_paid(self, invoice: Mapping[str, Any], classified: ClassifiedSubscription) -> str:
        subscription = classified.subscription
        period_start, period_end = subscription_period(subscription)
        amount_paid = to_amount(invoice.get("amount_paid"))

        if invoice.get("billing_reason") == "subscription_create":
            # customer.subscription.created owns the initial write
            logger.info(f"[WEBHOOK] Initial invoice {invoice.get('id')} for {subscription.get('id')}; skipping write")
            action = "notified"
        else:
            fields = subscription_fields(subscription, classified.account_email)
            fields.payment_date = from_unix(invoice.get("created")) or utc_now()
            fields.payment_amount = amount_paid
            upsert_billing_record(self.db, classified.account_class, fields)
            action = "processed"

        next_billing = None if subscription.get("cancel_at_period_end") else period_end
        self.notifier.payment_succeeded(
            to=classified.account_email,
            name=self._name(classified),
            amount=amount_paid,
            currency=invoice.get("currency") or self.currency,
            invoice_number=invoice.get("number") or invoice.get("id"),
            period_start=period_start,
            period_end=period_end,
            next_billing_date=next_billing,
            invoice_url=invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf"),
        )
        return action

    async def on_invoice_failed(self, invoice: Mapping[str, Any], classified: ClassifiedSubscription) -> str:
        subscription = classified.subscription
        if subscription.get("status") == SubscriptionStatusEnum.past_due.value:
            status = SubscriptionStatusEnum.past_due.value
        else:
            status = SubscriptionStatusEnum.unpaid.value

        fields = subscription_fields(subscription, classified.account_email)
        fields.subscription_status = status
        upsert_billing_record(self.db, classified.account_class, fields)

        self.notifier.payment_failed(
            to=classified.account_email,
            name=self._name(classified),
            amount_due=to_amount(invoice.get("amount_due")),
            currency=invoice.get("currency") or self.currency,
            invoice_number=invoice.get("number") or invoice.get("id"),
            invoice_url=invoice.get("hosted_invoice_url") or invoice.get("invoice_pdf"),
        )
        return "processed"

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def handle_checkout_completed(self, session: Mapping[str, Any], type_hint: Optional[str] = None) -> str:
        """Apply a completed checkout session.

        Also used synchronously by the manual replay endpoint, which is why
        it raises (PurchaseNotFoundError, persistence errors) instead of
        swallowing; `dispatch()` provides the boundary for webhooks.
        """
        session_id = session.get("id")
        metadata = dict(session.get("metadata") or {})
        if not metadata.get("type") and type_hint:
            metadata["type"] = type_hint

        try:
            purchase = parse_checkout_metadata(metadata)
        except ValidationError as e:
            logger.error(
                f"[WEBHOOK] Dropping checkout {session_id}: invalid metadata "
                f"type={metadata.get('type')!r} ({e.error_count()} errors)"
            )
            return "invalid_metadata"

        if session.get("mode") == "payment" and session.get("payment_status") == "unpaid":
            logger.info(f"[WEBHOOK] Checkout {session_id} completed without payment yet; waiting")
            return "awaiting_payment"

        if isinstance(purchase, ContactPurchase):
            purchase_connection_request(self.db, purchase.request_id, purchase.teacher_id, session_id)
            return "processed"

        if isinstance(purchase, TeacherPurchase):
            return await self._tutor_purchase(session, purchase)

        if isinstance(purchase, (TeacherPremiumSubscription, StudentPremiumSubscription)):
            if session.get("mode") == "subscription" and session.get("subscription"):
                logger.info(
                    f"[WEBHOOK] Checkout {session_id} is subscription "
                    f"{object_id(session.get('subscription'))}; handled by subscription events"
                )
                return "deferred_to_subscription"
            return await self._legacy_premium(session, purchase)

        return "ignored"

    def _session_email(self, session: Mapping[str, Any]) -> Optional[str]:
        details = session.get("customer_details") or {}
        return details.get("email") or session.get("customer_email")

    async def _legacy_premium(self, session: Mapping[str, Any], purchase) -> str:
        if isinstance(purchase, StudentPremiumSubscription):
            account_class = AccountClassEnum.student
            email = purchase.student_email or self._session_email(session)
            extra = {
                "subject": purchase.subject,
                "mobile": purchase.mobile,
                "topic": purchase.topic,
                "description": purchase.description,
            }
        else:
            account_class = AccountClassEnum.tutor
            email = purchase.teacher_email or self._session_email(session)
            extra = {}

        if not email:
            logger.error(f"[WEBHOOK] One-time premium checkout {session.get('id')} has no email; dropping")
            return "missing_email"

        amount = to_amount(session.get("amount_total"))
        record = record_legacy_payment(self.db, account_class, email, session.get("id"), amount, extra=extra)
        if record is None:
            return "skipped_subscription_exists"

        self.notifier.one_time_purchase(
            to=email,
            name=display_name(self.db, account_class, email),
            amount=amount,
            currency=session.get("currency") or self.currency,
        )
        return "processed"

    async def _tutor_purchase(self, session: Mapping[str, Any], purchase: TeacherPurchase) -> str:
        amount = to_amount(session.get("amount_total"))
        record_tutor_purchase(
            self.db,
            tutor_id=purchase.teacher_id,
            student_post_id=purchase.student_post_id,
            student_id=purchase.student_id,
            session_id=session.get("id"),
            amount=amount,
        )

        email = tutor_email(self.db, purchase.teacher_id) or self._session_email(session)
        if email:
            self.notifier.tutor_purchase(
                to=email,
                name=display_name(self.db, AccountClassEnum.tutor, email),
                amount=amount,
                student_post_id=purchase.student_post_id,
                currency=session.get("currency") or self.currency,
            )
        else:
            logger.warning(f"[WEBHOOK] No email for tutor {purchase.teacher_id}; purchase email skipped")
        return "processed"
