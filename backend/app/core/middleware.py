"""CORS and request middleware"""
import logging
import secrets
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.security import log_api_access, SESSION_COOKIE
from app.db.redis import get_csrf_token, set_csrf_token

logger = logging.getLogger(__name__)

# Called by Stripe or scrapers, never with a browser session
SESSIONLESS_PATHS = ("/api/stripe/webhook", "/api/stripe-connect/oauth/callback", "/metrics", "/health")

DEV_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


def get_allowed_origins():
    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins.extend(DEV_ORIGINS)
    return origins


def setup_cors_middleware(app):
    """Storefront origins may call checkout, finalize and membership routes with cookies"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-CSRF-Token", "X-Idempotency-Key"],
        expose_headers=["X-CSRF-Token"],
    )


def _ensure_csrf_header(response, session_id: str) -> None:
    token = get_csrf_token(session_id)
    if not token:
        token = secrets.token_urlsafe(32)
        set_csrf_token(session_id, token)
    response.headers["X-CSRF-Token"] = token


async def access_log_middleware(request: Request, call_next):
    """Access log line per request; successful session responses carry the CSRF token"""
    session_id = request.cookies.get(SESSION_COOKIE)
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        if session_id and status_code < 400 and request.url.path not in SESSIONLESS_PATHS:
            _ensure_csrf_header(response, session_id)
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)
