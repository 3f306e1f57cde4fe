"""Redis client for sessions, CSRF tokens and short-lived OAuth state"""
import asyncio
import logging
from typing import Optional

import redis
import redis.asyncio as aioredis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None
_async_client = None


def get_redis_client():
    """Shared sync client, created on first use so tests can swap in fakeredis"""
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_async_redis_client():
    """Get or create async Redis client bound to the running event loop"""
    global _async_client

    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if _async_client is not None:
        client_loop = getattr(_async_client.connection_pool, '_loop', None)
        if client_loop is not current_loop:
            # Stale client from another loop (tests create new loops)
            _async_client = None

    if _async_client is None:
        _async_client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            max_connections=20
        )
        _async_client.connection_pool._loop = current_loop

    return _async_client


SESSION_TTL = 30 * 24 * 60 * 60
CONNECT_STATE_TTL = 10 * 60  # Stripe Connect OAuth round trip


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _csrf_key(session_id: str) -> str:
    return f"csrf:{session_id}"


def _connect_state_key(state: str) -> str:
    return f"connect_state:{state}"


def _as_int(value) -> Optional[int]:
    return int(value) if value else None


def set_session(session_id: str, user_id: int) -> None:
    get_redis_client().setex(_session_key(session_id), SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Buyer or creator id for a session cookie, None once it has expired"""
    return _as_int(get_redis_client().get(_session_key(session_id)))


def set_csrf_token(session_id: str, token: str) -> None:
    get_redis_client().setex(_csrf_key(session_id), SESSION_TTL, token)


def get_csrf_token(session_id: str) -> Optional[str]:
    if not session_id:
        return None
    return get_redis_client().get(_csrf_key(session_id))


def set_connect_oauth_state(state: str, user_id: int) -> None:
    """Remember which creator started a Connect OAuth flow"""
    get_redis_client().setex(_connect_state_key(state), CONNECT_STATE_TTL, user_id)


def pop_connect_oauth_state(state: str) -> Optional[int]:
    """Consume an OAuth state value; a replayed callback gets None"""
    pipe = get_redis_client().pipeline()
    pipe.get(_connect_state_key(state))
    pipe.delete(_connect_state_key(state))
    user_id, _ = pipe.execute()
    return _as_int(user_id)
