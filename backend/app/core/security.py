"""Caller identity, CSRF checks, session cookies and the access log"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Depends, Header, HTTPException, Request, Response
from app.db.redis import get_session, get_csrf_token, SESSION_TTL
from app.core.config import settings

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

SESSION_COOKIE = "session_id"


def require_auth(request: Request) -> int:
    """Dependency: the signed-in user id

    Sessions are created by the login and claim flows; this only looks the
    cookie up. Services receive the id explicitly and never read the request.
    """
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")
    return user_id


async def require_csrf_new(
    request: Request,
    user_id: int = Depends(require_auth),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token")
) -> int:
    """Dependency: signed-in user whose request echoes the session's CSRF token"""
    expected = get_csrf_token(request.cookies.get(SESSION_COOKIE))
    if not expected or x_csrf_token != expected:
        security_logger.warning(
            f"CSRF check failed for user {user_id} on {request.method} {request.url.path} "
            f"from {get_client_ip(request)}"
        )
        raise HTTPException(403, "Invalid or missing CSRF token")
    return user_id


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.client.host if request.client else "unknown"


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """One JSON line per request

    Stripe webhook deliveries have no session, so the signature header's
    presence is logged instead to tell them apart from browser traffic.
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "session": session_id[:8] + "..." if session_id else None,
        "stripe_signed": "stripe-signature" in request.headers,
        "client_ip": get_client_ip(request),
        "status_code": status_code,
        "error": error,
    }
    level = logging.WARNING if error or status_code >= 400 else logging.INFO
    api_access_logger.log(level, f"API Access: {json.dumps(entry)}")


def set_auth_cookie(response: Response, session_id: str) -> None:
    """Session cookie shared with the storefront on the parent domain"""
    parts = settings.DOMAIN.split(":")[0].split(".")
    cookie_domain = "." + ".".join(parts[-2:]) if len(parts) >= 2 else None

    response.set_cookie(
        key=SESSION_COOKIE,
        value=session_id,
        domain=cookie_domain,
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=SESSION_TTL,
    )
