"""Audit ledger for received webhook events.

Records every delivery (event id, type, object id, last action, delivery
count) so operators can see which events errored and replay them. The
ledger is write-only from the dispatcher's point of view: redeliveries are
always processed again.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import BillingWebhookEvent
from .billing_store import BillingStoreError, dialect_insert

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    event_id: str,
    event_type: str,
    object_id: Optional[str],
    action: str,
) -> None:
    """Upsert the ledger row for `event_id`. Failures are logged, never raised."""
    table = BillingWebhookEvent.__table__
    now = datetime.utcnow()
    try:
        insert = dialect_insert(db)
        stmt = insert(table).values(
            event_id=event_id,
            event_type=event_type,
            object_id=object_id,
            last_action=action,
            delivery_count=1,
            first_received_at=now,
            last_received_at=now,
        ).on_conflict_do_update(
            index_elements=[table.c.event_id],
            set_={
                table.c.last_action: action,
                table.c.last_received_at: now,
                table.c.delivery_count: table.c.delivery_count + 1,
            },
        )
        db.execute(stmt)
        db.commit()
    except (SQLAlchemyError, BillingStoreError) as e:
        db.rollback()
        logger.warning(f"[WEBHOOK] Could not record event {event_id} in ledger: {e}")


def get_event(db: Session, event_id: str) -> Optional[BillingWebhookEvent]:
    return db.query(BillingWebhookEvent).filter(BillingWebhookEvent.event_id == event_id).first()
