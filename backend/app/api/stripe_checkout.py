"""Checkout creation and finalize routes"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ReconciliationError
from app.core.security import require_auth, require_csrf_new
from app.db.session import get_db
from app.schemas.checkout import CreateSessionRequest, FinalizeRequest, FinalizeResponse
from app.services.checkout_service import create_checkout_session
from app.services.finalize_service import finalize_checkout

router = APIRouter(prefix="/api/stripe-checkout", tags=["checkout"])
logger = logging.getLogger(__name__)


@router.get("/config")
def checkout_config():
    """Publishable key for Stripe.js on the checkout page"""
    return {"publishable_key": settings.STRIPE_PUBLISHABLE_KEY}


@router.post("/create-session")
def create_session(
    request_data: CreateSessionRequest,
    user_id: int = Depends(require_csrf_new),
    idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
    db: Session = Depends(get_db)
):
    """Start a Stripe Checkout session, or complete a free acquisition directly"""
    try:
        return create_checkout_session(
            db, user_id, request_data.product_id,
            success_url=request_data.success_url,
            cancel_url=request_data.cancel_url,
            idempotency_key=idempotency_key,
        )
    except ReconciliationError as e:
        raise HTTPException(e.status_code, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Error creating checkout session for user {user_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to create checkout session")


@router.post("/finalize", response_model=FinalizeResponse)
def finalize(
    request_data: FinalizeRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Confirm a checkout from the success page

    Safe to call repeatedly and concurrently with the webhook.
    """
    try:
        return finalize_checkout(db, request_data.session_id, user_id, action=request_data.action)
    except ReconciliationError as e:
        raise HTTPException(e.status_code, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Error finalizing checkout {request_data.session_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to finalize checkout")
