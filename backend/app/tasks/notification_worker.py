"""Background worker for delivering notifications and claim invitations

Polls the Redis task queue and runs each task in its own DB session.
Delivery is deduplicated inside deliver_notification(), so a task retried
after a crash never shows the user a second copy.
"""
import asyncio
import logging
from typing import Any, Dict, Set

from sqlalchemy.orm import Session

from app.core.metrics import task_queue_depth_gauge
from app.db.session import SessionLocal
from app.db.task_queue import (
    dequeue_task, promote_due_retries, mark_task_processing, mark_task_completed,
    mark_task_failed, cleanup_stale_tasks, queue_length,
    NOTIFICATION_TASK, CLAIM_TOKEN_TASK, TASK_TYPES
)
from app.services.buyer_service import send_claim_invitation
from app.services.notification_service import deliver_notification

logger = logging.getLogger(__name__)
notification_logger = logging.getLogger("notifications")


def run_task(task_data: Dict[str, Any], db: Session) -> Dict[str, Any]:
    """Execute one task synchronously and return its result

    Raises:
        ValueError: malformed task, not worth retrying
    """
    task_type = task_data.get("task_type")
    payload = task_data.get("payload") or {}

    if task_type == NOTIFICATION_TASK:
        if not payload.get("user_id"):
            raise ValueError("Notification task missing user_id")
        return {"delivered": deliver_notification(db, payload)}

    if task_type == CLAIM_TOKEN_TASK:
        if not payload.get("user_id"):
            raise ValueError("Claim token task missing user_id")
        return {"sent": send_claim_invitation(db, int(payload["user_id"]))}

    raise ValueError(f"Unknown task type: {task_type}")


async def process_task(task_data: Dict[str, Any]) -> None:
    """Process a single task (runs concurrently with other tasks)"""
    task_id = task_data.get("task_id")
    mark_task_processing(task_id)

    db = SessionLocal()
    try:
        result = await asyncio.to_thread(run_task, task_data, db)
        mark_task_completed(task_id, result)
    except ValueError as e:
        # Validation errors - don't retry
        logger.warning(f"Task {task_id} validation error: {e}")
        mark_task_failed(task_id, str(e), retry=False)
    except Exception as e:
        # Other errors - retry with exponential backoff
        notification_logger.error(f"Task {task_id} failed: {e}", exc_info=True)
        mark_task_failed(task_id, str(e), retry=True)
    finally:
        db.close()


MAX_CONCURRENT_TASKS = 10

# Strong references; the event loop only keeps weak ones
_running_tasks: Set[asyncio.Task] = set()


def spawn_task(task_data: Dict[str, Any]) -> asyncio.Task:
    task = asyncio.create_task(process_task(task_data))
    _running_tasks.add(task)
    task.add_done_callback(_running_tasks.discard)
    return task


async def notification_worker_task() -> None:
    """Main worker loop"""
    logger.info("Starting notification worker task")

    while True:
        try:
            cleanup_stale_tasks(timeout_seconds=3600)
            promoted = promote_due_retries()
            if promoted:
                logger.debug(f"Promoted {promoted} retry task(s)")
            for task_type in TASK_TYPES:
                task_queue_depth_gauge.labels(task_type=task_type).set(queue_length(task_type))

            if len(_running_tasks) >= MAX_CONCURRENT_TASKS:
                await asyncio.wait(_running_tasks, return_when=asyncio.FIRST_COMPLETED)
                continue

            task_data = await dequeue_task(list(TASK_TYPES), timeout=5)
            if task_data is None:
                continue

            spawn_task(task_data)

        except Exception as e:
            logger.error(f"Error in notification worker loop: {e}", exc_info=True)
            # Avoid a tight error loop
            await asyncio.sleep(5)
