"""Stripe webhook receiver"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.exceptions import WebhookSignatureError
from app.db.session import get_db
from app.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    200 for processed, ignored or already-processed events. 500 only when
    processing failed, so Stripe redelivers.
    """
    # Raw bytes; the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        return process_stripe_webhook(payload, sig_header, db)
    except WebhookSignatureError as e:
        security_logger.warning(
            f"Rejected webhook from {request.client.host if request.client else 'unknown'}: {e}"
        )
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"status": "error", "message": "Webhook processing failed"})
