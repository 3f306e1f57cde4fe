"""Membership API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.exceptions import ReconciliationError
from app.core.security import require_auth, require_csrf_new
from app.db.session import get_db
from app.schemas.memberships import SubscribeRequest
from app.services.membership_service import (
    list_memberships, has_access, request_cancellation, start_free_membership, serialize_membership
)

router = APIRouter(prefix="/api/memberships", tags=["memberships"])
logger = logging.getLogger(__name__)


@router.get("/mine")
def get_my_memberships(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"memberships": list_memberships(db, user_id)}


@router.get("/access/{creator_id}")
def check_access(creator_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"creator_id": creator_id, "has_access": has_access(db, user_id, creator_id)}


@router.post("/{membership_id}/cancel")
def cancel_membership(
    membership_id: int,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Cancel at period end. Access continues until the current period ends."""
    try:
        membership = request_cancellation(db, membership_id, user_id)
        return {"membership": serialize_membership(membership)}
    except ReconciliationError as e:
        raise HTTPException(e.status_code, str(e))
    except Exception as e:
        logger.error(f"Error canceling membership {membership_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to cancel membership")


@router.post("/subscribe")
def subscribe_free(
    request_data: SubscribeRequest,
    user_id: int = Depends(require_csrf_new),
    db: Session = Depends(get_db)
):
    """Join (or renew) a free membership"""
    try:
        membership = start_free_membership(db, user_id, request_data.product_id)
        return {"membership": serialize_membership(membership)}
    except ReconciliationError as e:
        raise HTTPException(e.status_code, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Error starting free membership for user {user_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to start membership")
