"""Redis-backed outbox for post-commit side effects

Reconciliation never sends anything inline. Notifications and claim-link
emails are pushed here once the database commit has succeeded, and the
worker delivers them later. A delivery failure therefore cannot undo a
payment record.

Layout:
    task:queue:{type}   list of ready task envelopes (LPUSH / BRPOP)
    task:delayed        sorted set of retry envelopes scored by due time
    task:meta:{id}      hash with status and retry bookkeeping
    task:processing     set of task ids a worker has claimed
"""
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.db.redis import get_redis_client, get_async_redis_client

logger = logging.getLogger(__name__)

QUEUE_KEY_PREFIX = "task:queue:"
META_KEY_PREFIX = "task:meta:"
DELAYED_KEY = "task:delayed"
PROCESSING_SET_KEY = "task:processing"

TASK_META_TTL = 24 * 60 * 60
MAX_RETRY_DELAY_SECONDS = 300

NOTIFICATION_TASK = "notification"
CLAIM_TOKEN_TASK = "claim_token"
TASK_TYPES = (NOTIFICATION_TASK, CLAIM_TOKEN_TASK)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _meta_key(task_id: str) -> str:
    return f"{META_KEY_PREFIX}{task_id}"


def _envelope(task_type: str, payload: Dict[str, Any], attempt: int, max_retries: int) -> Dict[str, Any]:
    return {
        "task_id": str(uuid.uuid4()),
        "task_type": task_type,
        "payload": payload,
        "retry_count": attempt,
        "max_retries": max_retries,
        "created_at": _now_iso(),
    }


def _record_meta(envelope: Dict[str, Any], status: str) -> None:
    client = get_redis_client()
    key = _meta_key(envelope["task_id"])
    client.hset(key, mapping={
        "task_id": envelope["task_id"],
        "task_type": envelope["task_type"],
        "payload": json.dumps(envelope["payload"]),
        "retry_count": str(envelope["retry_count"]),
        "max_retries": str(envelope["max_retries"]),
        "created_at": envelope["created_at"],
        "status": status,
    })
    client.expire(key, TASK_META_TTL)


def enqueue_task(task_type: str, payload: Dict[str, Any], max_retries: int = 3) -> str:
    """Push a new task onto its ready queue and return the task id"""
    if task_type not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {task_type}")

    envelope = _envelope(task_type, payload, 0, max_retries)
    _record_meta(envelope, "pending")
    get_redis_client().lpush(f"{QUEUE_KEY_PREFIX}{task_type}", json.dumps(envelope))
    logger.info(f"Queued {task_type} task {envelope['task_id']}")
    return envelope["task_id"]


def _schedule_retry(task_type: str, payload: Dict[str, Any], attempt: int, max_retries: int,
                    delay_seconds: int) -> str:
    envelope = _envelope(task_type, payload, attempt, max_retries)
    _record_meta(envelope, "pending")
    get_redis_client().zadd(DELAYED_KEY, {json.dumps(envelope): time.time() + delay_seconds})
    return envelope["task_id"]


def promote_due_retries(now: Optional[float] = None) -> int:
    """Move retries whose backoff has elapsed onto their ready queues"""
    client = get_redis_client()
    due = client.zrangebyscore(DELAYED_KEY, "-inf", now if now is not None else time.time())
    moved = 0
    for raw in due:
        # ZREM wins for exactly one worker when several promote at once
        if not client.zrem(DELAYED_KEY, raw):
            continue
        envelope = json.loads(raw)
        client.lpush(f"{QUEUE_KEY_PREFIX}{envelope['task_type']}", raw)
        moved += 1
    return moved


async def dequeue_task(task_types: List[str], timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Blocking pop across the ready queues; None on timeout or Redis trouble"""
    client = get_async_redis_client()
    if client is None:
        logger.error("Async Redis client not available")
        return None

    try:
        result = await client.brpop([f"{QUEUE_KEY_PREFIX}{t}" for t in task_types], timeout=timeout)
    except Exception as e:
        logger.error(f"Error dequeuing task: {e}", exc_info=True)
        return None
    if result is None:
        return None
    return json.loads(result[1])


def pop_task_nowait(task_type: str) -> Optional[Dict[str, Any]]:
    raw = get_redis_client().rpop(f"{QUEUE_KEY_PREFIX}{task_type}")
    return json.loads(raw) if raw else None


def queue_length(task_type: str) -> int:
    return int(get_redis_client().llen(f"{QUEUE_KEY_PREFIX}{task_type}"))


def delayed_count() -> int:
    return int(get_redis_client().zcard(DELAYED_KEY))


def get_task_status(task_id: str) -> Optional[Dict[str, Any]]:
    meta = get_redis_client().hgetall(_meta_key(task_id))
    if not meta:
        return None
    if "payload" in meta:
        meta["payload"] = json.loads(meta["payload"])
    for field in ("retry_count", "max_retries"):
        if field in meta:
            meta[field] = int(meta[field])
    return meta


def mark_task_processing(task_id: str) -> None:
    client = get_redis_client()
    client.hset(_meta_key(task_id), mapping={"status": "processing", "started_at": _now_iso()})
    client.sadd(PROCESSING_SET_KEY, task_id)


def mark_task_completed(task_id: str, result: Optional[Dict[str, Any]] = None) -> None:
    client = get_redis_client()
    fields = {"status": "completed", "completed_at": _now_iso()}
    if result:
        fields["result"] = json.dumps(result)
    client.hset(_meta_key(task_id), mapping=fields)
    client.srem(PROCESSING_SET_KEY, task_id)


def mark_task_failed(task_id: str, error: str, retry: bool = True) -> Optional[str]:
    """Record a failure and schedule a backed-off retry when attempts remain

    Returns:
        id of the retry task, or None when the task is given up
    """
    client = get_redis_client()
    key = _meta_key(task_id)
    meta = client.hgetall(key)
    client.srem(PROCESSING_SET_KEY, task_id)
    if not meta or not meta.get("payload"):
        logger.warning(f"Task {task_id} metadata not found")
        return None

    attempt = int(meta.get("retry_count", "0"))
    max_retries = int(meta.get("max_retries", "3"))

    if retry and attempt < max_retries:
        delay = min(MAX_RETRY_DELAY_SECONDS, 2 ** (attempt + 1))
        client.hset(key, mapping={"status": "retrying", "error": error, "retry_delay_seconds": str(delay)})
        retry_id = _schedule_retry(meta["task_type"], json.loads(meta["payload"]), attempt + 1, max_retries, delay)
        logger.info(f"Task {task_id} failed ({error}); retry {retry_id} due in {delay}s")
        return retry_id

    client.hset(key, mapping={"status": "failed", "error": error, "failed_at": _now_iso()})
    logger.warning(f"Task {task_id} gave up after {attempt + 1} attempt(s): {error}")
    return None


def cleanup_stale_tasks(timeout_seconds: int = 3600) -> int:
    """Fail tasks a crashed worker left in processing; returns how many"""
    client = get_redis_client()
    cleaned = 0
    now = datetime.now(timezone.utc)

    for task_id in list(client.smembers(PROCESSING_SET_KEY)):
        started = client.hget(_meta_key(task_id), "started_at")
        try:
            age = (now - datetime.fromisoformat(started)).total_seconds() if started else None
        except ValueError:
            age = None
        if age is not None and age <= timeout_seconds:
            continue
        if age is not None:
            client.hset(_meta_key(task_id), mapping={"status": "failed", "error": f"Stuck in processing for {age:.0f}s"})
        client.srem(PROCESSING_SET_KEY, task_id)
        cleaned += 1

    return cleaned
