"""Finalize - client-driven confirmation of a Checkout session

The success page calls this while the webhook may still be in flight. It
re-fetches the session from Stripe and runs the same reconciliation as the
webhook, so whichever arrives first records the order and the other is a
no-op.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.exceptions import (
    NotFoundError, OwnershipError, ModeMismatchError, DuplicateRecordError, UnsupportedModeError
)
from app.models.creator_profile import CreatorProfile
from app.models.product import Product
from app.models.user import User
from app.services import stripe_service
from app.services.auth_service import normalize_email
from app.services.buyer_service import attach_customer_ref
from app.services.checkout_service import action_for_product, mode_for_action, SESSION_MODES
from app.services.membership_service import apply_subscription_state
from app.services.order_service import (
    FREE_SESSION_PREFIX, reconcile_paid_checkout, get_order_by_session
)
from app.services.stripe_service import get_stripe_value, get_stripe_id, get_metadata

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

PAID_STATUSES = ("paid", "no_payment_required")
ACTIONS = ("purchase", "request", "membership")


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def creator_display_name(db: Session, creator_id: Optional[int]) -> str:
    if creator_id:
        name = db.query(CreatorProfile.display_name).filter(CreatorProfile.user_id == creator_id).scalar()
        if name:
            return name
    return "Creator"


def session_buyer_email(session: Any) -> Optional[str]:
    details = get_stripe_value(session, "customer_details")
    return normalize_email(get_stripe_value(details, "email") or get_stripe_value(session, "customer_email"))


def _check_ownership(db: Session, session: Any, user_id: int) -> None:
    """The session must belong to the caller: metadata buyer first, then customer or email"""
    session_id = get_stripe_value(session, "id")
    metadata_buyer = _int_or_none(get_metadata(session).get("buyer_id"))
    if metadata_buyer is not None:
        if metadata_buyer == user_id:
            return
    else:
        user = db.query(User).filter(User.id == user_id).first()
        customer_ref = get_stripe_id(get_stripe_value(session, "customer"))
        if user and customer_ref and user.stripe_customer_id == customer_ref:
            return
        email = session_buyer_email(session)
        if user and email and user.email == email:
            return

    security_logger.warning(f"User {user_id} tried to finalize checkout session {session_id} they do not own")
    raise OwnershipError("Not your session")


def _finalize_free(db: Session, session_id: str, user_id: int, action: Optional[str]) -> Dict[str, Any]:
    order = get_order_by_session(db, session_id)
    if not order:
        raise NotFoundError("Order not found")
    if order.buyer_id != user_id:
        security_logger.warning(f"User {user_id} tried to finalize free order {order.id} they do not own")
        raise OwnershipError("Not your session")

    product = db.query(Product).filter(Product.id == order.product_id).first()
    kind = action_for_product(product) if product else "purchase"
    if action and action != kind:
        raise ModeMismatchError(f"Session is a {kind}, not a {action}")
    return {
        "type": kind,
        "creatorDisplayName": creator_display_name(db, product.creator_id if product else None),
        "orderId": order.id,
    }


def finalize_checkout(db: Session, session_id: str, user_id: int, action: Optional[str] = None) -> Dict[str, Any]:
    """Confirm a checkout for the authenticated caller

    Returns:
        {"type": purchase|request|membership, "creatorDisplayName": str, "orderId": int|None}

    Raises:
        OwnershipError: session belongs to someone else
        ModeMismatchError: requested action disagrees with the session mode
        SessionNotFoundError / ProcessorError: Stripe lookup failed
        DuplicateRecordError: a conflicting row already exists
    """
    if action is not None and action not in ACTIONS:
        raise ValueError(f"Unknown action: {action}")

    if session_id.startswith(FREE_SESSION_PREFIX):
        return _finalize_free(db, session_id, user_id, action)

    session = stripe_service.retrieve_checkout_session(session_id)
    _check_ownership(db, session, user_id)

    metadata = get_metadata(session)
    mode = get_stripe_value(session, "mode")
    if mode not in SESSION_MODES:
        raise UnsupportedModeError(f"Unsupported session mode: {mode}")
    recorded_action = metadata.get("action")
    if recorded_action and mode_for_action(recorded_action) != mode:
        raise ModeMismatchError(f"Session mode {mode} does not match recorded action {recorded_action}")
    if action and mode_for_action(action) != mode:
        raise ModeMismatchError(f"Session mode {mode} cannot be finalized as a {action}")

    kind = recorded_action or action or ("membership" if mode == "subscription" else "purchase")
    creator_id = _int_or_none(metadata.get("creator_id"))
    if creator_id is None:
        product_id = _int_or_none(metadata.get("product_id"))
        if product_id:
            creator_id = db.query(Product.creator_id).filter(Product.id == product_id).scalar()

    result: Dict[str, Any] = {
        "type": kind,
        "creatorDisplayName": creator_display_name(db, creator_id),
        "orderId": None,
    }

    paid = get_stripe_value(session, "payment_status") in PAID_STATUSES
    if not paid:
        logger.info(f"Checkout session {session_id} not paid yet (user {user_id})")
        return result

    customer_ref = get_stripe_id(get_stripe_value(session, "customer"))
    try:
        if customer_ref:
            attach_customer_ref(db, user_id, customer_ref)

        if mode == "subscription":
            subscription = get_stripe_value(session, "subscription")
            if isinstance(subscription, str):
                subscription = stripe_service.retrieve_subscription(subscription)
            if subscription is not None:
                apply_subscription_state(db, subscription, buyer_id=user_id)
        else:
            result["orderId"] = reconcile_paid_checkout(
                db,
                session_id,
                metadata,
                payment_ref=get_stripe_id(get_stripe_value(session, "payment_intent")),
                amount_cents=get_stripe_value(session, "amount_total"),
                buyer_email=session_buyer_email(session),
                customer_ref=customer_ref,
                buyer_id=user_id,
                path="finalize",
            )
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Conflicting record while finalizing {session_id}: {e}")
        raise DuplicateRecordError("This purchase was already recorded") from e

    logger.info(f"Finalized checkout {session_id} for user {user_id} ({kind})")
    return result
