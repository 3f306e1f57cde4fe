"""Background cleanup of the webhook ledger, claim tokens and stale queue entries

Placeholder (ghost) accounts are never removed here; an unclaimed account
still owns its orders and memberships.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import cleanup_runs_counter, cleanup_rows_removed_counter
from app.db.helpers import utc_now
from app.db.session import SessionLocal
from app.db.task_queue import cleanup_stale_tasks
from app.services.buyer_service import purge_expired_claim_tokens
from app.services.event_ledger import purge_events_before

cleanup_logger = logging.getLogger("cleanup")


def run_cleanup(db: Session) -> Dict[str, int]:
    """One cleanup pass; returns rows removed per table"""
    cutoff = utc_now() - timedelta(days=settings.EVENT_LEDGER_RETENTION_DAYS)
    removed = {
        "stripe_events": purge_events_before(cutoff, db),
        "account_claim_tokens": purge_expired_claim_tokens(db),
    }
    for table, count in removed.items():
        if count:
            cleanup_rows_removed_counter.labels(table=table).inc(count)
    return removed


async def cleanup_task():
    """Runs every hour"""
    while True:
        try:
            await asyncio.sleep(3600)

            db = SessionLocal()
            try:
                cleanup_logger.info("Starting cleanup task...")
                removed = run_cleanup(db)
                stale = cleanup_stale_tasks(timeout_seconds=3600)
                cleanup_logger.info(
                    f"Cleanup complete: {removed['stripe_events']} ledger rows, "
                    f"{removed['account_claim_tokens']} claim tokens, {stale} stale tasks"
                )
                cleanup_runs_counter.labels(status="success").inc()
            finally:
                db.close()

        except Exception as e:
            cleanup_logger.error(f"Cleanup task error: {e}", exc_info=True)
            cleanup_runs_counter.labels(status="failure").inc()
