"""Creator storefront eligibility"""
import logging

from sqlalchemy.orm import Session

from app.models.connect_account import StripeConnectAccount
from app.models.creator_profile import CreatorProfile
from app.models.product import Product

logger = logging.getLogger(__name__)


def compute_creator_active(db: Session, user_id: int) -> bool:
    """Complete profile, a Connect account that can take money, and something to sell"""
    profile = db.query(CreatorProfile).filter(CreatorProfile.user_id == user_id).first()
    if not profile or not profile.is_profile_complete:
        return False

    account = db.query(StripeConnectAccount).filter(StripeConnectAccount.user_id == user_id).first()
    if not account or not (account.charges_enabled or account.details_submitted):
        return False

    has_product = db.query(Product.id).filter(
        Product.creator_id == user_id,
        Product.is_active.is_(True)
    ).first() is not None
    return has_product


def recompute_creator_active(db: Session, user_id: int) -> bool:
    """Store the eligibility flag on the creator profile and return it"""
    active = compute_creator_active(db, user_id)
    updated = db.query(CreatorProfile).filter(
        CreatorProfile.user_id == user_id,
        CreatorProfile.is_active.isnot(active)
    ).update({CreatorProfile.is_active: active}, synchronize_session=False)
    db.commit()
    if updated:
        logger.info(f"Creator {user_id} is now {'active' if active else 'inactive'}")
    return active
