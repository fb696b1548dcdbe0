"""Subscription state store.

WHAT:
    Persists billing-provider state into exactly one premium row per account
    email (per account class). Webhook handlers, checkout flows and the
    subscription management endpoints all write through here.

WHY:
    Stripe delivers webhooks at-least-once and out of order, and different
    event types for the same subscription race each other (the initial
    `invoice.payment_succeeded` usually lands together with
    `customer.subscription.created`). A lookup-then-insert sequence leaves a
    window where both handlers insert. Instead:

    1. If a subscription id is given, the row already carrying that id is the
       target, whatever email it was created under.
    2. Otherwise a single INSERT ... ON CONFLICT (account_email) DO UPDATE
       writes the row atomically. The unique constraint on account_email makes
       a duplicate row impossible.
    3. If a concurrent writer claimed the subscription id between step 1 and
       step 2 the unique constraint on provider_subscription_id rejects the
       write; roll back and retry once through step 1.

UPDATE SEMANTICS:
    Field-sparse. Only provided (non-None) fields overwrite columns, except:
    - cancel_at_period_end is always written
    - the legacy paid flag is recomputed as status in {active, trialing}
      whenever a status is provided

REFERENCES:
    - tutor_billing/models.py (TutorPremium, StudentPremium)
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
    AccountClassEnum,
    PAID_STATUSES,
    Student,
    billing_model_for,
)
from .billing_types import BillingFields
from .premium_status import utc_now

logger = logging.getLogger(__name__)


# Columns copied from BillingFields when not None
_SPARSE_FIELDS = (
    "provider_customer_id",
    "provider_subscription_id",
    "subscription_status",
    "current_period_start",
    "current_period_end",
    "canceled_at",
    "payment_date",
    "payment_amount",
    "provider_session_id",
)

# Content columns a subscription event may carry per class
_EXTRA_FIELDS = {
    AccountClassEnum.tutor: ("link_or_video", "link1", "link2", "link3", "video1", "video2", "video3"),
    AccountClassEnum.student: ("subject", "mobile", "topic", "description"),
}


class BillingStoreError(Exception):
    """Raised when an upsert cannot be completed."""


# =============================================================================
# HELPERS
# =============================================================================

def dialect_insert(db: Session):
    """Return the dialect-specific `insert` construct supporting ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise BillingStoreError(f"Atomic upsert not supported on dialect '{dialect}'")


def _attr_values(account_class: AccountClassEnum, fields: BillingFields) -> Dict[str, Any]:
    """Build {attribute_name: value} for the provided (non-None) fields."""
    values: Dict[str, Any] = {}
    for name in _SPARSE_FIELDS:
        value = getattr(fields, name)
        if value is not None:
            values[name] = value

    allowed_extra = _EXTRA_FIELDS[account_class]
    for name, value in (fields.extra or {}).items():
        if name not in allowed_extra:
            logger.warning(f"[BILLING_STORE] Ignoring unknown {account_class.value} field '{name}'")
            continue
        if value is not None:
            values[name] = value

    values["cancel_at_period_end"] = bool(fields.cancel_at_period_end)
    if fields.subscription_status is not None:
        values["legacy_paid"] = fields.subscription_status in PAID_STATUSES
    return values


def _columns(model, values: Dict[str, Any]) -> Dict[Any, Any]:
    """Translate attribute names to Column objects (legacy flag column names differ per class)."""
    mapper_columns = model.__mapper__.columns
    return {mapper_columns[name]: value for name, value in values.items()}


def get_billing_record(db: Session, account_class, account_email: str):
    model = billing_model_for(account_class)
    return db.query(model).filter(model.account_email == account_email).first()


def get_billing_record_by_subscription(db: Session, account_class, subscription_id: str):
    model = billing_model_for(account_class)
    return db.query(model).filter(model.provider_subscription_id == subscription_id).first()


# =============================================================================
# UPSERT
# =============================================================================

def _update_by_subscription(db: Session, account_class, subscription_id: str, values: Dict[str, Any]):
    record = get_billing_record_by_subscription(db, account_class, subscription_id)
    if record is None:
        return None

    # The row keeps its own email; the subscription id is the identity here
    for name, value in values.items():
        setattr(record, name, value)
    record.legacy_paid = record.subscription_status in PAID_STATUSES
    record.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(record)
    return record


def _upsert_by_email(db: Session, model, account_email: str, values: Dict[str, Any], paid_from_status: bool = False):
    insert = dialect_insert(db)

    insert_values = dict(values)
    insert_values["account_email"] = account_email
    insert_values.setdefault("subscription_status", "none")
    insert_values.setdefault("legacy_paid", False)

    update_values = dict(values)
    update_values["updated_at"] = datetime.utcnow()
    if paid_from_status and "legacy_paid" not in update_values:
        # No status in this write: derive the flag from the stored status
        update_values["legacy_paid"] = model.__table__.c.subscription_status.in_(sorted(PAID_STATUSES))

    stmt = insert(model.__table__).values(_columns(model, insert_values))
    stmt = stmt.on_conflict_do_update(
        index_elements=[model.__table__.c.account_email],
        set_=_columns(model, update_values),
    )
    db.execute(stmt)
    db.commit()

    return db.query(model).filter(model.account_email == account_email).populate_existing().first()


def upsert_billing_record(db: Session, account_class, fields: BillingFields):
    """Persist provider state for one account, idempotently.

    Parameters:
        db: Session
        account_class: AccountClassEnum (or its string value)
        fields: BillingFields; None values are left untouched

    Returns:
        The persisted TutorPremium/StudentPremium row.

    Raises:
        BillingStoreError: unsupported dialect or an unresolvable conflict.
        sqlalchemy.exc.SQLAlchemyError: other persistence failures.
    """
    account_class = AccountClassEnum(account_class)
    model = billing_model_for(account_class)
    values = _attr_values(account_class, fields)
    subscription_id = fields.provider_subscription_id

    for attempt in range(2):
        if subscription_id:
            record = _update_by_subscription(db, account_class, subscription_id, values)
            if record is not None:
                logger.info(
                    f"[BILLING_STORE] Updated {account_class.value} record {record.id} "
                    f"by subscription {subscription_id} (status={record.subscription_status})"
                )
                return record

        existed = get_billing_record(db, account_class, fields.account_email) is not None
        try:
            record = _upsert_by_email(db, model, fields.account_email, values, paid_from_status=True)
        except IntegrityError as e:
            db.rollback()
            if attempt == 0 and subscription_id:
                logger.warning(
                    f"[BILLING_STORE] Subscription {subscription_id} claimed concurrently, "
                    f"retrying by subscription id: {e.orig}"
                )
                continue
            raise BillingStoreError(
                f"Could not upsert {account_class.value} record for {fields.account_email}"
            ) from e

        if not existed and account_class == AccountClassEnum.student:
            _flag_student_premium(db, fields.account_email)

        logger.info(
            f"[BILLING_STORE] {'Updated' if existed else 'Created'} {account_class.value} record "
            f"for {fields.account_email} (subscription={record.provider_subscription_id}, "
            f"status={record.subscription_status})"
        )
        return record

    raise BillingStoreError(f"Upsert retries exhausted for {fields.account_email}")


def _flag_student_premium(db: Session, account_email: str) -> None:
    """Mirror premium ownership onto the student profile when one exists."""
    updated = (
        db.query(Student)
        .filter(Student.email == account_email)
        .update({Student.has_premium: True}, synchronize_session=False)
    )
    if updated:
        db.commit()


# =============================================================================
# LEGACY ONE-TIME PAYMENTS
# =============================================================================

def record_legacy_payment(
    db: Session,
    account_class,
    account_email: str,
    session_id: Optional[str],
    amount: Optional[Decimal],
    extra: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
):
    """Grant the legacy one-time premium window.

    A row that already has a subscription is governed by subscription fields
    only, so the write is skipped for it.

    Returns:
        The row (updated or created), or None when skipped.
    """
    account_class = AccountClassEnum(account_class)
    model = billing_model_for(account_class)

    existing = get_billing_record(db, account_class, account_email)
    if existing is not None and existing.provider_subscription_id:
        logger.info(
            f"[BILLING_STORE] Skipping one-time payment for {account_email}: "
            f"record has subscription {existing.provider_subscription_id}"
        )
        return None

    values: Dict[str, Any] = {
        "legacy_paid": True,
        "payment_date": now or utc_now(),
        "cancel_at_period_end": False,
    }
    if session_id:
        values["provider_session_id"] = session_id
    if amount is not None:
        values["payment_amount"] = amount
    allowed_extra = _EXTRA_FIELDS[account_class]
    for name, value in (extra or {}).items():
        if name in allowed_extra and value is not None:
            values[name] = value

    record = _upsert_by_email(db, model, account_email, values)
    if existing is None and account_class == AccountClassEnum.student:
        _flag_student_premium(db, account_email)

    logger.info(f"[BILLING_STORE] One-time premium recorded for {account_class.value} {account_email}")
    return record


# =============================================================================
# ACCOUNT-SIDE WRITES
# =============================================================================

def ensure_billing_record(db: Session, account_class, account_email: str):
    """Return the account's row, creating an empty one if missing."""
    account_class = AccountClassEnum(account_class)
    model = billing_model_for(account_class)
    insert = dialect_insert(db)

    stmt = insert(model.__table__).values(
        _columns(model, {"account_email": account_email, "subscription_status": "none", "legacy_paid": False})
    ).on_conflict_do_nothing(index_elements=[model.__table__.c.account_email])
    db.execute(stmt)
    db.commit()
    return get_billing_record(db, account_class, account_email)


def attach_customer_id(db: Session, account_class, account_email: str, customer_id: str) -> None:
    """Store a resolved provider customer id on an existing row."""
    record = get_billing_record(db, account_class, account_email)
    if record is None or record.provider_customer_id == customer_id:
        return
    record.provider_customer_id = customer_id
    db.commit()


def update_premium_content(db: Session, record, content: Dict[str, Any]):
    """Write tutor premium content (links or uploaded videos).

    Caller is responsible for the premium-active check.
    """
    if content.get("link_or_video", True):
        record.link_or_video = True
        record.link1 = content.get("link1") or ""
        record.link2 = content.get("link2") or ""
        record.link3 = content.get("link3") or ""
    else:
        record.link_or_video = False
        record.video1 = content.get("video1")
        record.video2 = content.get("video2")
        record.video3 = content.get("video3")
    db.commit()
    db.refresh(record)
    return record
