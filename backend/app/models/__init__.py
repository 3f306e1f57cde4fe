"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.claim_token import AccountClaimToken
from app.models.creator_profile import CreatorProfile
from app.models.product import Product
from app.models.order import Order
from app.models.membership import Membership
from app.models.connect_account import StripeConnectAccount
from app.models.stripe_event import StripeEvent
from app.models.notification import Notification, NotificationDispatch

# Export all for convenience
__all__ = [
    "Base", "User", "AccountClaimToken", "CreatorProfile", "Product", "Order",
    "Membership", "StripeConnectAccount", "StripeEvent", "Notification",
    "NotificationDispatch"
]
