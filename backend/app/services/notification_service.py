"""Notification service - deferred, deduplicated notification delivery

Reconciliation code never sends anything inline. It records tasks on the
SQLAlchemy session with queue_notification()/defer_task(); after its own
commit it calls flush_pending_tasks(), which pushes them to the Redis task
queue. The worker then calls deliver_notification(), which claims the
dedup key and writes the in-app row in one transaction, so a given key is
shown to the user at most once no matter how many times it was queued.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.metrics import notifications_counter
from app.db.helpers import upsert_insert
from app.db.task_queue import enqueue_task, NOTIFICATION_TASK
from app.models.notification import Notification, NotificationDispatch
from app.models.user import User
from app.services.email_service import send_notification_email

logger = logging.getLogger(__name__)
notification_logger = logging.getLogger("notifications")

PENDING_TASKS_KEY = "pending_tasks"


def defer_task(db: Session, task_type: str, payload: Dict[str, Any]) -> None:
    """Hold a task until the caller's transaction has committed"""
    db.info.setdefault(PENDING_TASKS_KEY, []).append((task_type, payload))


def pending_tasks(db: Session) -> List[Tuple[str, Dict[str, Any]]]:
    return list(db.info.get(PENDING_TASKS_KEY, []))


def discard_pending_tasks(db: Session) -> None:
    """Drop deferred tasks after a rollback"""
    dropped = db.info.pop(PENDING_TASKS_KEY, [])
    if dropped:
        logger.info(f"Discarded {len(dropped)} deferred task(s) after rollback")


def flush_pending_tasks(db: Session) -> int:
    """Enqueue every deferred task. Must only be called after commit.

    Enqueue failures are logged and swallowed: the payment record is already
    durable and the notification is a side effect.
    """
    tasks = db.info.pop(PENDING_TASKS_KEY, [])
    enqueued = 0
    for task_type, payload in tasks:
        try:
            enqueue_task(task_type, payload)
            enqueued += 1
        except Exception as e:
            notification_logger.error(
                f"Failed to enqueue {task_type} task (dedup_key={payload.get('dedup_key')}): {e}",
                exc_info=True
            )
            notifications_counter.labels(type=payload.get("type", task_type), outcome="enqueue_failed").inc()
    return enqueued


def queue_notification(
    db: Session,
    user_id: Optional[int],
    notification_type: str,
    title: str,
    body: Optional[str] = None,
    dedup_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    send_email: bool = True,
) -> None:
    """Defer an in-app (and optionally email) notification for user_id"""
    if not user_id:
        return
    defer_task(db, NOTIFICATION_TASK, {
        "user_id": int(user_id),
        "type": notification_type,
        "title": title,
        "body": body,
        "dedup_key": dedup_key,
        "metadata": metadata or {},
        "send_email": send_email,
    })


def claim_dispatch(db: Session, dedup_key: str, notification_type: str, user_id: Optional[int]) -> bool:
    """Insert-or-ignore into the dispatch log. True if this caller owns the send."""
    stmt = upsert_insert(db, NotificationDispatch).values(
        dedup_key=dedup_key,
        notification_type=notification_type,
        user_id=user_id,
    ).on_conflict_do_nothing(index_elements=["dedup_key"])
    return db.execute(stmt).rowcount == 1


def already_notified(db: Session, dedup_key: str) -> bool:
    return db.query(NotificationDispatch.id).filter(
        NotificationDispatch.dedup_key == dedup_key
    ).first() is not None


def deliver_notification(db: Session, payload: Dict[str, Any]) -> bool:
    """Deliver one queued notification. Returns False when skipped as a duplicate."""
    user_id = payload.get("user_id")
    notification_type = payload.get("type", "general")
    dedup_key = payload.get("dedup_key")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        notification_logger.warning(f"Notification {notification_type} for missing user {user_id}, dropping")
        notifications_counter.labels(type=notification_type, outcome="no_user").inc()
        return False

    try:
        if dedup_key and not claim_dispatch(db, dedup_key, notification_type, user_id):
            db.rollback()
            notification_logger.info(f"Skipping duplicate notification {dedup_key}")
            notifications_counter.labels(type=notification_type, outcome="duplicate").inc()
            return False

        db.add(Notification(
            user_id=user_id,
            type=notification_type,
            title=payload.get("title") or notification_type,
            body=payload.get("body"),
            notification_metadata=payload.get("metadata") or {},
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise

    notifications_counter.labels(type=notification_type, outcome="delivered").inc()

    if payload.get("send_email") and user.email_notifications_enabled:
        # Best effort; the in-app row is already committed
        send_notification_email(user.email, payload.get("title") or notification_type, payload.get("body"))

    return True
