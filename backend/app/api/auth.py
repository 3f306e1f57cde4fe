"""Account claim route for buyers who checked out as guests"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from app.core.security import set_auth_cookie
from app.db.session import get_db
from app.schemas.auth import ClaimAccountRequest, ClaimedUserResponse
from app.services.auth_service import create_session
from app.services.buyer_service import claim_account

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/claim", response_model=ClaimedUserResponse)
def claim(request_data: ClaimAccountRequest, response: Response, db: Session = Depends(get_db)):
    """Set a password on a guest account and log in"""
    try:
        user = claim_account(db, request_data.token, request_data.password)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.error(f"Account claim error: {e}", exc_info=True)
        raise HTTPException(500, "Account claim failed")

    set_auth_cookie(response, create_session(user.id))
    return {"id": user.id, "email": user.email}
