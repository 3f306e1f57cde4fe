"""Daily reminder for memberships renewing soon"""
import asyncio
import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from app.db.helpers import utc_now, as_utc
from app.db.session import SessionLocal
from app.models.membership import Membership
from app.models.product import Product
from app.services.notification_service import (
    queue_notification, already_notified, flush_pending_tasks
)

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(days=3)


def queue_renewal_reminders(db: Session) -> int:
    """Queue one reminder per membership per billing period. Returns how many were queued."""
    now = utc_now()
    due = db.query(Membership).filter(
        Membership.status.in_(("active", "trialing")),
        Membership.cancel_at_period_end.is_(False),
        Membership.current_period_end.isnot(None),
        Membership.current_period_end > now,
        Membership.current_period_end <= now + REMINDER_WINDOW,
    ).all()

    queued = 0
    for membership in due:
        period_end = as_utc(membership.current_period_end)
        dedup_key = f"renewal_reminder:membership:{membership.id}:{period_end.date().isoformat()}"
        if already_notified(db, dedup_key):
            continue
        product = db.query(Product).filter(Product.id == membership.product_id).first()
        queue_notification(
            db, membership.buyer_id, "membership_renewal",
            title="Your membership renews soon",
            body=f"{product.title if product else 'Your membership'} renews on {period_end.date().isoformat()}",
            dedup_key=dedup_key,
            metadata={"membership_id": membership.id},
        )
        queued += 1

    flush_pending_tasks(db)
    return queued


async def renewal_reminder_task():
    """Runs once a day"""
    while True:
        try:
            await asyncio.sleep(24 * 3600)
            db = SessionLocal()
            try:
                count = queue_renewal_reminders(db)
                logger.info(f"Queued {count} renewal reminder(s)")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Renewal reminder task error: {e}", exc_info=True)
