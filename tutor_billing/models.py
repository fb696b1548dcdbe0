"""SQLAlchemy ORM models and enums.

This module defines the billing schema for the two account classes (tutors,
students) plus the small set of marketplace tables the billing core writes to
when a one-time purchase completes.

Each premium table holds at most one row per account email. The uniqueness of
`account_email` and `provider_subscription_id` is enforced by the database so
the billing store can rely on atomic upserts instead of check-then-insert.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import Column, String, DateTime, Integer, Numeric, Text, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, declared_attr


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class AccountClassEnum(str, enum.Enum):
    tutor = "tutor"
    student = "student"


class SubscriptionStatusEnum(str, enum.Enum):
    """Subscription lifecycle states mirrored from the billing provider.

    The column itself is a plain string: the provider occasionally reports
    states outside this set (incomplete, paused) and those are stored verbatim.
    """
    none = "none"
    active = "active"
    trialing = "trialing"
    past_due = "past_due"
    unpaid = "unpaid"
    canceled = "canceled"


# Statuses that count as "paid" for the derived legacy flag
PAID_STATUSES = {SubscriptionStatusEnum.active.value, SubscriptionStatusEnum.trialing.value}


class ConnectionRequestStatusEnum(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    purchased = "purchased"
    rejected = "rejected"


# Billing records ------------------------------------------------

class BillingRecordMixin:
    """Columns shared by both premium tables.

    The legacy one-time-payment flag keeps its historical column name per
    class (`ispaid` for tutors, `ispayed` for students); subclasses set
    `legacy_paid_column` and the mixin maps it onto `legacy_paid`.
    """

    legacy_paid_column = "ispaid"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_email = Column(String(255), nullable=False, unique=True, index=True)

    provider_customer_id = Column(String(255), nullable=True, index=True)
    provider_subscription_id = Column(String(255), nullable=True, unique=True)

    subscription_status = Column(String(32), nullable=False, default=SubscriptionStatusEnum.none.value)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    payment_date = Column(DateTime(timezone=True), nullable=True)
    payment_amount = Column(Numeric(10, 2), nullable=True)
    provider_session_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @declared_attr
    def legacy_paid(cls):
        return Column(cls.legacy_paid_column, Boolean, nullable=False, default=False)

    def __str__(self):
        return f"{self.account_email} ({self.subscription_status})"


class TutorPremium(BillingRecordMixin, Base):
    """Premium record for a tutor.

    Content is either three video links (`link_or_video = True`) or three
    uploaded video references. The billing core never reads it; it is only
    written by the gated content update.
    """
    __tablename__ = "tutor_premium"

    legacy_paid_column = "ispaid"

    link_or_video = Column(Boolean, nullable=False, default=True)
    link1 = Column(String(512), nullable=True, default="")
    link2 = Column(String(512), nullable=True, default="")
    link3 = Column(String(512), nullable=True, default="")
    video1 = Column(String(512), nullable=True)
    video2 = Column(String(512), nullable=True)
    video3 = Column(String(512), nullable=True)


class StudentPremium(BillingRecordMixin, Base):
    """Premium record for a student, carrying the request form captured at checkout."""
    __tablename__ = "student_premium"

    legacy_paid_column = "ispayed"

    subject = Column(String(255), nullable=True, default="")
    mobile = Column(String(64), nullable=True, default="")
    topic = Column(String(255), nullable=True, default="")
    description = Column(Text, nullable=True, default="")


BILLING_MODELS = {
    AccountClassEnum.tutor: TutorPremium,
    AccountClassEnum.student: StudentPremium,
}


def billing_model_for(account_class):
    """Return the premium model for an account class (enum or string)."""
    return BILLING_MODELS[AccountClassEnum(account_class)]


# Marketplace tables ---------------------------------------------

class Tutor(Base):
    """Tutor profile. Only the fields billing needs (names for emails)."""
    __tablename__ = "tutors"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return self.email


class Student(Base):
    __tablename__ = "students"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    has_premium = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return self.email


class StudentPost(Base):
    __tablename__ = "student_posts"

    id = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    subject = Column(String(255), nullable=True)
    phone_number = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ConnectionRequest(Base):
    """A student's request to connect with a tutor.

    The tutor pays to reveal the student's contact details; a completed
    `contact_purchase` checkout flips the request to `purchased`.
    """
    __tablename__ = "connection_requests"

    id = Column(String(64), primary_key=True)
    tutor_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default=ConnectionRequestStatusEnum.pending.value)
    payment_status = Column(String(32), nullable=True)
    contact_revealed = Column(Boolean, nullable=False, default=False)
    purchase_date = Column(DateTime(timezone=True), nullable=True)
    provider_session_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TutorPurchase(Base):
    """A tutor's one-time purchase of a student post's phone number."""
    __tablename__ = "tutor_purchases"
    __table_args__ = (
        UniqueConstraint("tutor_id", "student_post_id", name="uq_tutor_purchase_post"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tutor_id = Column(String(64), nullable=False, index=True)
    student_post_id = Column(String(64), nullable=False)
    student_id = Column(String(64), nullable=True)
    payment_status = Column(String(32), nullable=False, default="pending")
    payment_amount = Column(Numeric(10, 2), nullable=True)
    provider_session_id = Column(String(255), nullable=True)
    phone_number_access = Column(Boolean, nullable=False, default=False)
    purchase_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BillingWebhookEvent(Base):
    """Audit ledger of webhook deliveries.

    One row per provider event id; redeliveries bump `delivery_count` and
    overwrite `last_action`. Never used to skip processing: handlers are
    idempotent and a redelivery must still converge the billing record.
    """
    __tablename__ = "billing_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    object_id = Column(String(255), nullable=True)
    last_action = Column(String(64), nullable=True)
    delivery_count = Column(Integer, nullable=False, default=1)
    first_received_at = Column(DateTime, default=datetime.utcnow)
    last_received_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.event_type} {self.event_id}"
