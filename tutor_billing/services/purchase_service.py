"""One-time marketplace purchases completed through Stripe Checkout.

- Contact purchase: a tutor pays to reveal a student's contact details on a
  connection request.
- Tutor purchase: a tutor buys phone-number access to a student post.

Both are idempotent under webhook redelivery.
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import AccountClassEnum, ConnectionRequest, ConnectionRequestStatusEnum, Tutor, Student, TutorPurchase
from .premium_status import utc_now

logger = logging.getLogger(__name__)


class PurchaseNotFoundError(Exception):
    pass


def purchase_connection_request(
    db: Session,
    request_id: str,
    tutor_id: str,
    session_id: Optional[str],
) -> ConnectionRequest:
    """Mark a connection request as purchased and reveal the contact.

    Raises:
        PurchaseNotFoundError: no request with this id for this tutor.
    """
    request = (
        db.query(ConnectionRequest)
        .filter(ConnectionRequest.id == request_id, ConnectionRequest.tutor_id == tutor_id)
        .first()
    )
    if request is None:
        raise PurchaseNotFoundError(f"Connection request {request_id} not found for tutor {tutor_id}")

    if request.status == ConnectionRequestStatusEnum.purchased.value:
        logger.info(f"[PURCHASE] Connection request {request_id} already purchased")
        return request

    request.status = ConnectionRequestStatusEnum.purchased.value
    request.payment_status = "paid" if session_id else "free_subscription"
    request.contact_revealed = True
    request.purchase_date = utc_now()
    request.provider_session_id = session_id
    db.commit()
    db.refresh(request)

    logger.info(f"[PURCHASE] Connection request {request_id} purchased by tutor {tutor_id}")
    return request


def record_tutor_purchase(
    db: Session,
    tutor_id: str,
    student_post_id: str,
    student_id: str,
    session_id: Optional[str],
    amount: Optional[Decimal],
) -> TutorPurchase:
    """Create or refresh the (tutor, post) purchase with phone access granted."""
    def _apply(purchase: TutorPurchase) -> None:
        purchase.student_id = student_id
        purchase.payment_status = "paid"
        purchase.payment_amount = amount
        purchase.provider_session_id = session_id
        purchase.phone_number_access = True
        purchase.purchase_date = utc_now()

    purchase = (
        db.query(TutorPurchase)
        .filter(TutorPurchase.tutor_id == tutor_id, TutorPurchase.student_post_id == student_post_id)
        .first()
    )
    if purchase is None:
        purchase = TutorPurchase(tutor_id=tutor_id, student_post_id=student_post_id)
        _apply(purchase)
        db.add(purchase)
        try:
            db.commit()
        except IntegrityError:
            # Redelivery raced us to the insert; fall through to update
            db.rollback()
            purchase = (
                db.query(TutorPurchase)
                .filter(TutorPurchase.tutor_id == tutor_id, TutorPurchase.student_post_id == student_post_id)
                .one()
            )
            _apply(purchase)
            db.commit()
    else:
        _apply(purchase)
        db.commit()

    db.refresh(purchase)
    logger.info(f"[PURCHASE] Tutor {tutor_id} purchased post {student_post_id}")
    return purchase


def display_name(db: Session, account_class, email: Optional[str]) -> str:
    """First name for emails, defaulting to the class label."""
    account_class = AccountClassEnum(account_class)
    model = Student if account_class == AccountClassEnum.student else Tutor
    default = "Student" if account_class == AccountClassEnum.student else "Tutor"
    if not email:
        return default
    profile = db.query(model).filter(model.email == email).first()
    if profile is None or not profile.first_name:
        return default
    return profile.first_name


def tutor_email(db: Session, tutor_id: str) -> Optional[str]:
    tutor = db.query(Tutor).filter(Tutor.id == tutor_id).first()
    return tutor.email if tutor else None
