"""Checkout creation - start a Stripe Checkout session for a product

Paid one-time products get a pending order first, so the webhook and the
finalize call can find it through metadata order_id. Zero-price products
never reach Stripe.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import settings, CHECKOUT_SUCCESS_URL, CHECKOUT_CANCEL_URL
from app.core.exceptions import NotFoundError
from app.models.connect_account import StripeConnectAccount
from app.models.product import Product
from app.models.user import User
from app.services import stripe_service
from app.services.membership_service import start_free_membership
from app.services.order_service import (
    create_free_order, create_pending_order, attach_session_to_order
)
from app.services.stripe_service import get_stripe_value

logger = logging.getLogger(__name__)


def action_for_product(product: Product) -> str:
    """purchase | request | membership"""
    if product.product_type == "membership":
        return "membership"
    if product.product_type == "request":
        return "request"
    return "purchase"


SESSION_MODES = ("payment", "subscription")


def mode_for_action(action: str) -> str:
    return "subscription" if action == "membership" else "payment"


def application_fee_cents(amount_cents: int) -> int:
    return (amount_cents * settings.PLATFORM_FEE_BPS) // 10000


def _creator_account_id(db: Session, creator_id: int) -> Optional[str]:
    account = db.query(StripeConnectAccount).filter(StripeConnectAccount.user_id == creator_id).first()
    if account and account.stripe_account_id:
        return account.stripe_account_id
    return db.query(User.stripe_account_id).filter(User.id == creator_id).scalar()


def _customer_params(buyer: User) -> Dict[str, Any]:
    if buyer.stripe_customer_id:
        return {"customer": buyer.stripe_customer_id}
    return {"customer_email": buyer.email}


def create_checkout_session(
    db: Session,
    buyer_id: int,
    product_id: int,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a Checkout session (or complete a free acquisition)

    The Stripe idempotency key defaults to `co_{order_id}` for payments and
    `sub_{buyer}_{product}` for subscriptions; a caller-supplied key replaces it.

    Returns:
        Dict with `type`, `free`, and either `url`/`session_id` for Stripe
        checkouts or `order_id`/`membership_id` for free ones.

    Raises:
        NotFoundError: product missing or inactive
        ValueError: self-purchase, creator cannot take payments
        ProcessorError: Stripe refused the session
    """
    product = db.query(Product).filter(Product.id == product_id, Product.is_active.is_(True)).first()
    if not product:
        raise NotFoundError("Product not found")
    if product.creator_id == buyer_id:
        raise ValueError("You cannot buy your own product")

    buyer = db.query(User).filter(User.id == buyer_id).first()
    if not buyer:
        raise NotFoundError("User not found")

    action = action_for_product(product)
    mode = mode_for_action(action)

    if not product.price_cents or product.price_cents <= 0:
        if action == "membership":
            membership = start_free_membership(db, buyer_id, product.id)
            return {"type": action, "free": True, "membership_id": membership.id}
        order_id = create_free_order(db, buyer_id, product, action=action)
        return {"type": action, "free": True, "order_id": order_id}

    destination = _creator_account_id(db, product.creator_id)
    if not destination:
        raise ValueError("This creator cannot accept payments yet")

    success_url = success_url or f"{CHECKOUT_SUCCESS_URL}?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = cancel_url or CHECKOUT_CANCEL_URL

    metadata = {
        "action": action,
        "product_id": str(product.id),
        "creator_id": str(product.creator_id),
        "buyer_id": str(buyer_id),
    }
    price_data: Dict[str, Any] = {
        "currency": "usd",
        "unit_amount": product.price_cents,
        "product_data": {"name": product.title},
    }
    params: Dict[str, Any] = {
        "mode": mode,
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": str(buyer_id),
        **_customer_params(buyer),
    }

    order_id = None
    if mode == "payment":
        order = create_pending_order(db, buyer_id, product)
        order_id = order.id
        metadata["order_id"] = str(order.id)
        params["line_items"] = [{"price_data": price_data, "quantity": 1}]
        params["payment_intent_data"] = {
            "application_fee_amount": application_fee_cents(product.price_cents),
            "transfer_data": {"destination": destination},
            "metadata": metadata,
        }
        derived_key = f"co_{order.id}"
    else:
        price_data["recurring"] = {"interval": "month"}
        params["line_items"] = [{"price_data": price_data, "quantity": 1}]
        params["subscription_data"] = {
            "application_fee_percent": settings.PLATFORM_FEE_BPS / 100,
            "transfer_data": {"destination": destination},
            "metadata": metadata,
        }
        derived_key = f"sub_{buyer_id}_{product.id}"
    params["metadata"] = metadata

    # A client key lets a buyer start over after abandoning an earlier session
    session = stripe_service.create_checkout_session(params, idempotency_key or derived_key)
    session_id = get_stripe_value(session, "id")

    if order_id:
        attach_session_to_order(db, order_id, session_id)

    logger.info(f"Created {mode} checkout {session_id} for user {buyer_id}, product {product.id}")
    return {
        "type": action,
        "free": False,
        "session_id": session_id,
        "url": get_stripe_value(session, "url"),
        "order_id": order_id,
    }
