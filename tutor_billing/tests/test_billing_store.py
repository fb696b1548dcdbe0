"""Tests for the subscription state store (atomic upserts)."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from tutor_billing.models import Student, StudentPremium, TutorPremium
from tutor_billing.services.billing_store import (
    ensure_billing_record,
    get_billing_record,
    record_legacy_payment,
    upsert_billing_record,
)
from tutor_billing.services.billing_types import BillingFields


def _rows(db, model, email):
    return db.query(model).filter(model.account_email == email).all()


def test_upsert_creates_then_updates_single_row(test_db_session, now):
    fields = BillingFields(
        account_email="t@x.com",
        provider_customer_id="cus_1",
        provider_subscription_id="sub_1",
        subscription_status="active",
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
    )

    first = upsert_billing_record(test_db_session, "tutor", fields)
    second = upsert_billing_record(test_db_session, "tutor", fields)

    assert first.id == second.id
    assert len(_rows(test_db_session, TutorPremium, "t@x.com")) == 1
    assert second.provider_subscription_id == "sub_1"
    assert second.legacy_paid is True


def test_sparse_update_does_not_clobber_with_none(test_db_session, now):
    upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com",
        provider_customer_id="cus_1",
        provider_subscription_id="sub_1",
        subscription_status="active",
        current_period_end=now + timedelta(days=30),
        payment_amount=Decimal("29.00"),
    ))

    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com",
        provider_subscription_id="sub_1",
        subscription_status="past_due",
    ))

    assert record.subscription_status == "past_due"
    assert record.provider_customer_id == "cus_1"
    assert record.payment_amount == Decimal("29.00")
    assert record.current_period_end is not None
    assert record.legacy_paid is False


def test_cancel_at_period_end_is_always_written(test_db_session):
    upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com", provider_subscription_id="sub_1",
        subscription_status="active", cancel_at_period_end=True,
    ))
    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com", provider_subscription_id="sub_1",
    ))

    assert record.cancel_at_period_end is False
    # No status provided: paid flag left as computed before
    assert record.legacy_paid is True


@pytest.mark.parametrize("order", ["with_sub_first", "without_sub_first"])
def test_interleaved_writes_converge_to_one_row(test_db_session, now, order):
    with_sub = BillingFields(
        account_email="t@x.com",
        provider_subscription_id="sub_1",
        subscription_status="active",
        current_period_end=now + timedelta(days=30),
    )
    without_sub = BillingFields(
        account_email="t@x.com",
        payment_date=now,
        payment_amount=Decimal("29.00"),
    )
    writes = [with_sub, without_sub] if order == "with_sub_first" else [without_sub, with_sub]

    for fields in writes:
        upsert_billing_record(test_db_session, "tutor", fields)

    rows = _rows(test_db_session, TutorPremium, "t@x.com")
    assert len(rows) == 1
    assert rows[0].provider_subscription_id == "sub_1"
    assert rows[0].payment_amount == Decimal("29.00")


def test_subscription_id_lookup_wins_over_email(test_db_session):
    upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="old@x.com", provider_subscription_id="sub_1", subscription_status="active",
    ))

    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="new@x.com", provider_subscription_id="sub_1", subscription_status="past_due",
    ))

    assert record.account_email == "old@x.com"
    assert record.subscription_status == "past_due"
    assert get_billing_record(test_db_session, "tutor", "new@x.com") is None


def test_email_is_unique_at_database_level(test_db_session):
    test_db_session.add(TutorPremium(account_email="dup@x.com"))
    test_db_session.commit()
    test_db_session.add(TutorPremium(account_email="dup@x.com"))

    with pytest.raises(IntegrityError):
        test_db_session.commit()
    test_db_session.rollback()


def test_subscription_id_is_unique_at_database_level(test_db_session):
    test_db_session.add(TutorPremium(account_email="a@x.com", provider_subscription_id="sub_1"))
    test_db_session.commit()
    test_db_session.add(TutorPremium(account_email="b@x.com", provider_subscription_id="sub_1"))

    with pytest.raises(IntegrityError):
        test_db_session.commit()
    test_db_session.rollback()


def test_classes_are_stored_separately(test_db_session):
    upsert_billing_record(test_db_session, "tutor", BillingFields(account_email="same@x.com", subscription_status="active"))
    upsert_billing_record(test_db_session, "student", BillingFields(account_email="same@x.com", subscription_status="unpaid"))

    assert get_billing_record(test_db_session, "tutor", "same@x.com").subscription_status == "active"
    assert get_billing_record(test_db_session, "student", "same@x.com").subscription_status == "unpaid"


def test_student_insert_flags_profile_and_stores_form(test_db_session):
    test_db_session.add(Student(id="s1", email="a@b.com", first_name="Ana"))
    test_db_session.commit()

    record = upsert_billing_record(test_db_session, "student", BillingFields(
        account_email="a@b.com",
        provider_subscription_id="sub_s",
        subscription_status="active",
        extra={"subject": "Math", "mobile": "555", "unknown": "ignored"},
    ))

    assert isinstance(record, StudentPremium)
    assert record.subject == "Math"
    assert record.legacy_paid is True
    student = test_db_session.query(Student).filter_by(id="s1").one()
    test_db_session.refresh(student)
    assert student.has_premium is True


def test_legacy_payment_creates_record(test_db_session, now):
    record = record_legacy_payment(test_db_session, "tutor", "t@x.com", "cs_1", Decimal("29.00"), now=now)

    assert record.legacy_paid is True
    assert record.provider_session_id == "cs_1"
    assert record.provider_subscription_id is None


def test_legacy_payment_skipped_for_subscription_rows(test_db_session):
    upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com", provider_subscription_id="sub_1", subscription_status="canceled",
    ))

    assert record_legacy_payment(test_db_session, "tutor", "t@x.com", "cs_2", Decimal("29.00")) is None
    record = get_billing_record(test_db_session, "tutor", "t@x.com")
    assert record.legacy_paid is False
    assert record.provider_session_id is None


def test_ensure_billing_record_is_idempotent(test_db_session):
    first = ensure_billing_record(test_db_session, "tutor", "t@x.com")
    second = ensure_billing_record(test_db_session, "tutor", "t@x.com")

    assert first.id == second.id
    assert first.subscription_status == "none"
    assert first.link_or_video is True


def test_paid_flag_recomputed_from_stored_status_by_email(test_db_session, now):
    record_legacy_payment(test_db_session, "tutor", "t@x.com", "cs_1", Decimal("29.00"), now=now)

    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com",
        provider_subscription_id="sub_1",
    ))

    assert record.subscription_status == "none"
    assert record.legacy_paid is False


def test_paid_flag_recomputed_from_stored_status_by_subscription(test_db_session, now):
    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com",
        provider_subscription_id="sub_1",
        subscription_status="past_due",
    ))
    record.legacy_paid = True
    test_db_session.commit()

    record = upsert_billing_record(test_db_session, "tutor", BillingFields(
        account_email="t@x.com",
        provider_subscription_id="sub_1",
        payment_amount=Decimal("31.00"),
    ))

    assert record.payment_amount == Decimal("31.00")
    assert record.legacy_paid is False
