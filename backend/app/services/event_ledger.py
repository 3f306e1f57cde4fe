"""Webhook event dedup ledger"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.db.helpers import upsert_insert, utc_now
from app.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)


def mark_if_new(event_id: str, event_type: str, db: Session) -> bool:
    """Record a Stripe event id; True only for the first caller ever to record it.

    A single INSERT ... ON CONFLICT DO NOTHING, so concurrent deliveries of the
    same event cannot both see "new".
    """
    stmt = upsert_insert(db, StripeEvent).values(
        stripe_event_id=event_id,
        event_type=event_type,
        created_at=utc_now(),
    ).on_conflict_do_nothing(index_elements=["stripe_event_id"])

    try:
        inserted = db.execute(stmt).rowcount == 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not inserted:
        logger.info(f"Stripe event {event_id} already recorded, skipping")
    return inserted


def release_event(event_id: str, db: Session) -> None:
    """Forget an event whose processing raised, so Stripe's retry is processed"""
    db.query(StripeEvent).filter(StripeEvent.stripe_event_id == event_id).delete(synchronize_session=False)
    db.commit()
    logger.warning(f"Released Stripe event {event_id} from ledger after processing failure")


def purge_events_before(cutoff: datetime, db: Session) -> int:
    """Garbage-collect ledger rows older than cutoff; Stripe stops retrying after 3 days"""
    removed = db.query(StripeEvent).filter(StripeEvent.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    return removed
