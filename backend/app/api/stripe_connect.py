"""Stripe Connect onboarding routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ReconciliationError
from app.core.security import require_auth, require_csrf_new
from app.db.session import get_db
from app.services.connect_service import (
    create_connect_link, complete_connect_oauth, sync_for_creator, get_connect_status
)

router = APIRouter(prefix="/api/stripe-connect", tags=["stripe-connect"])
logger = logging.getLogger(__name__)


@router.post("/create-link")
def create_link(user_id: int = Depends(require_csrf_new)):
    try:
        return {"url": create_connect_link(user_id)}
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.get("/oauth/callback")
def oauth_callback(
    code: str = Query(None),
    state: str = Query(None),
    error: str = Query(None),
    db: Session = Depends(get_db)
):
    """Stripe redirects the creator here after onboarding"""
    dashboard_url = f"{settings.FRONTEND_URL.rstrip('/')}/creator/payouts"
    if error or not code:
        logger.warning(f"Connect OAuth returned without a code: {error}")
        return RedirectResponse(f"{dashboard_url}?connect=error")

    try:
        complete_connect_oauth(db, code, state)
    except ReconciliationError as e:
        logger.error(f"Connect OAuth exchange failed: {e}")
        return RedirectResponse(f"{dashboard_url}?connect=error")
    except ValueError as e:
        logger.warning(f"Connect OAuth callback rejected: {e}")
        return RedirectResponse(f"{dashboard_url}?connect=invalid")

    return RedirectResponse(f"{dashboard_url}?connect=success")


@router.post("/sync")
def sync(user_id: int = Depends(require_csrf_new), db: Session = Depends(get_db)):
    """Refresh capability flags from Stripe"""
    try:
        sync_for_creator(db, user_id)
        return get_connect_status(db, user_id)
    except ReconciliationError as e:
        raise HTTPException(e.status_code, str(e))
    except Exception as e:
        logger.error(f"Error syncing Connect account for user {user_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to sync Stripe account")


@router.get("/status")
def status(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return get_connect_status(db, user_id)
