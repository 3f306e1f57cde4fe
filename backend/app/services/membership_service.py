"""Membership state machine - project Stripe subscriptions onto memberships

Status is only ever copied from Stripe. Each lifecycle event first tries an
UPDATE keyed by subscription id; the first event for a new subscription
falls through to an upsert keyed by (buyer, creator, product).
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import NotFoundError, ProcessorError
from app.core.metrics import membership_events_counter, membership_cancellations_counter
from app.db.helpers import upsert_insert, utc_now, as_utc, from_timestamp, add_one_month
from app.models.membership import Membership, MEMBERSHIP_STATUSES, ACCESS_STATUSES
from app.models.product import Product
from app.services import stripe_service
from app.services.buyer_service import resolve_buyer
from app.services.notification_service import (
    queue_notification, flush_pending_tasks, discard_pending_tasks
)
from app.services.stripe_service import get_stripe_value, get_stripe_id, get_metadata

logger = logging.getLogger(__name__)
reconcile_logger = logging.getLogger("reconcile")

# Stripe statuses without a local counterpart
STATUS_ALIASES = {
    "incomplete_expired": "canceled",
    "unpaid": "past_due",
    "paused": "past_due",
}


def normalize_status(status: Optional[str]) -> str:
    value = (status or "").lower()
    value = STATUS_ALIASES.get(value, value)
    if value not in MEMBERSHIP_STATUSES:
        raise ValueError(f"Unknown subscription status: {status!r}")
    return value


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _resolve_subscription_buyer(db: Session, subscription: Any) -> Optional[int]:
    """Guest membership: find or create the buyer from the Stripe customer"""
    customer_ref = get_stripe_id(get_stripe_value(subscription, "customer"))
    if not customer_ref:
        return None

    buyer_id = resolve_buyer(db, customer_ref=customer_ref)
    if buyer_id is not None:
        return buyer_id

    # Subscription payloads carry no email; fetch it from the customer
    customer = get_stripe_value(subscription, "customer")
    if isinstance(customer, str) or get_stripe_value(customer, "email") is None:
        customer = stripe_service.retrieve_customer(customer_ref)
    return resolve_buyer(db, email=get_stripe_value(customer, "email"), customer_ref=customer_ref)


def _queue_creation_notifications(db: Session, membership: Membership, subscription_ref: str) -> None:
    product = db.query(Product).filter(Product.id == membership.product_id).first()
    title = product.title if product else "a membership"
    queue_notification(
        db, membership.creator_id, "creator_sale",
        title="New membership subscriber",
        body=f"Someone subscribed to {title}",
        dedup_key=f"creator_sale:subscription:{subscription_ref}",
        metadata={"stripe_subscription_id": subscription_ref, "membership_id": membership.id},
    )
    queue_notification(
        db, membership.buyer_id, "membership",
        title="Your membership is active",
        body=f"You are now subscribed to {title}",
        dedup_key=f"membership_started:subscription:{subscription_ref}",
        metadata={"stripe_subscription_id": subscription_ref, "membership_id": membership.id},
    )


def apply_subscription_state(
    db: Session,
    subscription: Any,
    is_creation: bool = False,
    deleted: bool = False,
    buyer_id: Optional[int] = None,
) -> Optional[int]:
    """Apply one Stripe subscription snapshot. Returns the membership id.

    Args:
        subscription: Stripe Subscription (object or dict)
        is_creation: True only for customer.subscription.created; gates the
            one-time "new subscriber" notification
        deleted: customer.subscription.deleted
        buyer_id: authenticated caller (finalize path), wins over metadata

    Returns None when the subscription cannot be tied to a buyer/creator/product.
    """
    sub_id = get_stripe_value(subscription, "id")
    if not sub_id:
        raise ValueError("Subscription id missing")

    status = "canceled" if deleted else normalize_status(get_stripe_value(subscription, "status"))
    period_end = from_timestamp(stripe_service.subscription_period_end(subscription))
    now = utc_now()
    canceled_at = from_timestamp(get_stripe_value(subscription, "canceled_at")) or now

    values: Dict[Any, Any] = {
        Membership.status: status,
        Membership.cancel_at_period_end: bool(get_stripe_value(subscription, "cancel_at_period_end", False)),
        Membership.updated_at: now,
    }
    if period_end is not None:
        values[Membership.current_period_end] = period_end
    if status == "canceled":
        # First transition into canceled wins
        values[Membership.canceled_at] = func.coalesce(Membership.canceled_at, canceled_at)

    try:
        updated = db.query(Membership).filter(
            Membership.stripe_subscription_id == sub_id
        ).update(values, synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if updated == 0:
        metadata = get_metadata(subscription)
        creator_id = _int_or_none(metadata.get("creator_id"))
        product_id = _int_or_none(metadata.get("product_id"))
        if not creator_id or not product_id:
            reconcile_logger.warning(f"Subscription {sub_id} has no creator/product metadata, ignoring")
            return None

        if buyer_id is None:
            buyer_id = _int_or_none(metadata.get("buyer_id"))
        if buyer_id is None:
            buyer_id = _resolve_subscription_buyer(db, subscription)
        if buyer_id is None:
            reconcile_logger.warning(f"Subscription {sub_id} has no resolvable buyer, ignoring")
            return None

        table = Membership.__table__
        stmt = upsert_insert(db, Membership).values(
            buyer_id=buyer_id,
            creator_id=creator_id,
            product_id=product_id,
            stripe_subscription_id=sub_id,
            status=status,
            cancel_at_period_end=values[Membership.cancel_at_period_end],
            current_period_end=period_end,
            canceled_at=canceled_at if status == "canceled" else None,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["buyer_id", "creator_id", "product_id"],
            set_={
                "stripe_subscription_id": stmt.excluded.stripe_subscription_id,
                "status": stmt.excluded.status,
                "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
                "current_period_end": func.coalesce(stmt.excluded.current_period_end, table.c.current_period_end),
                "canceled_at": func.coalesce(table.c.canceled_at, stmt.excluded.canceled_at),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise

    membership = db.query(Membership).filter(Membership.stripe_subscription_id == sub_id).first()
    if membership is None:
        return None

    kind = "deleted" if deleted else ("created" if is_creation else "updated")
    membership_events_counter.labels(kind=kind).inc()
    reconcile_logger.info(f"Membership {membership.id} <- subscription {sub_id} ({kind}, status={status})")

    if is_creation:
        try:
            _queue_creation_notifications(db, membership, sub_id)
        except Exception as e:
            discard_pending_tasks(db)
            reconcile_logger.error(f"Could not queue notifications for subscription {sub_id}: {e}", exc_info=True)
        else:
            flush_pending_tasks(db)

    return membership.id


def apply_invoice_paid(db: Session, invoice: Any) -> Optional[int]:
    """invoice.paid carries no subscription state, so re-fetch it from Stripe"""
    sub_id = stripe_service.invoice_subscription_id(invoice)
    if not sub_id:
        return None
    subscription = stripe_service.retrieve_subscription(sub_id)
    return apply_subscription_state(db, subscription)


def request_cancellation(db: Session, membership_id: int, user_id: int) -> Membership:
    """Cancel at period end. Stripe is asked first; local state changes only after it agrees.

    Raises:
        NotFoundError: membership missing or owned by someone else
        ProcessorError: Stripe refused or was unreachable; nothing changed locally
    """
    membership = db.query(Membership).filter(
        Membership.id == membership_id,
        Membership.buyer_id == user_id
    ).first()
    if not membership:
        raise NotFoundError("Membership not found")

    values: Dict[Any, Any] = {Membership.cancel_at_period_end: True}

    if membership.stripe_subscription_id:
        try:
            subscription = stripe_service.set_cancel_at_period_end(membership.stripe_subscription_id)
        except ProcessorError as e:
            membership_cancellations_counter.labels(outcome="processor_failed").inc()
            logger.error(f"Stripe cancellation failed for membership {membership_id}: {e}")
            raise ProcessorError("Stripe cancellation failed. Please try again.") from e

        # Mirror what Stripe reports
        values[Membership.cancel_at_period_end] = bool(get_stripe_value(subscription, "cancel_at_period_end", True))
        stripe_status = get_stripe_value(subscription, "status")
        if stripe_status:
            values[Membership.status] = normalize_status(stripe_status)
        period_end = from_timestamp(stripe_service.subscription_period_end(subscription))
        if period_end is not None:
            values[Membership.current_period_end] = period_end

    db.query(Membership).filter(Membership.id == membership.id).update(values, synchronize_session=False)
    db.commit()
    db.refresh(membership)

    membership_cancellations_counter.labels(outcome="stripe" if membership.stripe_subscription_id else "local").inc()
    logger.info(f"Membership {membership.id} set to cancel at period end (user {user_id})")
    return membership


def start_free_membership(db: Session, buyer_id: int, product_id: int) -> Membership:
    """Free membership: active for one month, extended by a month on renewal. No Stripe call."""
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFoundError("Product not found")
    if product.product_type != "membership":
        raise ValueError("Product is not a membership")
    if product.creator_id == buyer_id:
        raise ValueError("You cannot subscribe to yourself")
    if product.price_cents and product.price_cents > 0:
        raise ValueError("This membership requires checkout")

    now = utc_now()
    triple = (
        Membership.buyer_id == buyer_id,
        Membership.creator_id == product.creator_id,
        Membership.product_id == product.id,
    )

    period_end = add_one_month(now)
    stmt = upsert_insert(db, Membership).values(
        buyer_id=buyer_id,
        creator_id=product.creator_id,
        product_id=product.id,
        status="active",
        cancel_at_period_end=False,
        current_period_end=period_end,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["buyer_id", "creator_id", "product_id"])
    inserted = db.execute(stmt).rowcount == 1
    db.commit()

    membership = db.query(Membership).filter(*triple).first()
    if not inserted:
        base = max(as_utc(membership.current_period_end) or now, now)
        period_end = add_one_month(base)
        db.query(Membership).filter(Membership.id == membership.id).update({
            Membership.status: "active",
            Membership.cancel_at_period_end: False,
            Membership.current_period_end: period_end,
        }, synchronize_session=False)
        db.commit()
        db.refresh(membership)

    period_key = period_end.strftime("%Y%m%d")
    queue_notification(
        db, product.creator_id, "creator_sale",
        title="New membership subscriber",
        body=f"Someone subscribed to {product.title}",
        dedup_key=f"creator_sale:membership:{membership.id}:{period_key}",
        metadata={"membership_id": membership.id},
    )
    queue_notification(
        db, buyer_id, "membership",
        title="Your membership is active",
        body=f"You are now subscribed to {product.title}",
        dedup_key=f"membership_started:membership:{membership.id}:{period_key}",
        metadata={"membership_id": membership.id},
    )
    flush_pending_tasks(db)

    logger.info(f"Free membership {membership.id} active until {period_end.isoformat()}")
    return membership


def membership_has_access(membership: Membership, now: Optional[datetime] = None) -> bool:
    """Access while the status grants it, or while a scheduled cancellation has not yet ended"""
    now = now or utc_now()
    period_end = as_utc(membership.current_period_end)
    if period_end is not None and now > period_end:
        return False
    if membership.status in ACCESS_STATUSES:
        return True
    return bool(membership.cancel_at_period_end) and period_end is not None


def serialize_membership(membership: Membership, now: Optional[datetime] = None) -> Dict[str, Any]:
    period_end = as_utc(membership.current_period_end)
    canceled_at = as_utc(membership.canceled_at)
    return {
        "id": membership.id,
        "creator_id": membership.creator_id,
        "product_id": membership.product_id,
        "status": membership.status,
        "cancel_at_period_end": membership.cancel_at_period_end,
        "current_period_end": period_end.isoformat() if period_end else None,
        "canceled_at": canceled_at.isoformat() if canceled_at else None,
        "has_access": membership_has_access(membership, now),
    }


def list_memberships(db: Session, buyer_id: int) -> List[Dict[str, Any]]:
    memberships = db.query(Membership).filter(
        Membership.buyer_id == buyer_id
    ).order_by(Membership.created_at.desc()).all()
    now = utc_now()
    return [serialize_membership(m, now) for m in memberships]


def has_access(db: Session, buyer_id: int, creator_id: int) -> bool:
    now = utc_now()
    memberships = db.query(Membership).filter(
        Membership.buyer_id == buyer_id,
        Membership.creator_id == creator_id
    ).all()
    return any(membership_has_access(m, now) for m in memberships)
