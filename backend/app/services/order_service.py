"""Order reconciliation - turn a paid checkout into exactly one paid order

Both the webhook and the finalize endpoint call reconcile_paid_checkout()
for the same checkout session, possibly at the same moment. Every write is
a conditional UPDATE or an INSERT ... ON CONFLICT DO NOTHING keyed by the
unique checkout session id, so the outcome is one paid row no matter how
the calls interleave.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.metrics import orders_reconciled_counter
from app.db.helpers import upsert_insert, utc_now
from app.models.order import Order, PAYABLE_STATUSES
from app.models.product import Product
from app.services.buyer_service import resolve_buyer
from app.services.notification_service import (
    queue_notification, flush_pending_tasks, discard_pending_tasks
)

logger = logging.getLogger(__name__)
reconcile_logger = logging.getLogger("reconcile")

FREE_SESSION_PREFIX = "free_"


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _queue_order_notifications(db: Session, order_id: int) -> None:
    """Buyer receipt and creator sale notice, each deduplicated by order id"""
    order = db.query(Order).filter(Order.id == order_id).first()
    product = db.query(Product).filter(Product.id == order.product_id).first() if order else None
    if not order or not product:
        return

    queue_notification(
        db, order.buyer_id, "purchase",
        title="Your purchase is confirmed",
        body=f"Order #{order.id}: {product.title}",
        dedup_key=f"purchase_receipt:order:{order.id}",
        metadata={"order_id": order.id, "product_id": product.id},
    )
    queue_notification(
        db, product.creator_id, "creator_sale",
        title="New sale",
        body=f"Someone purchased {product.title}",
        dedup_key=f"creator_sale:order:{order.id}",
        metadata={"order_id": order.id, "product_id": product.id},
    )


def _after_paid(db: Session, order_id: int) -> None:
    # Side effects only; the paid row is already committed
    try:
        _queue_order_notifications(db, order_id)
    except Exception as e:
        discard_pending_tasks(db)
        reconcile_logger.error(f"Could not queue notifications for order {order_id}: {e}", exc_info=True)
        return
    flush_pending_tasks(db)


def reconcile_paid_checkout(
    db: Session,
    session_ref: str,
    metadata: Optional[Dict[str, Any]],
    payment_ref: Optional[str],
    amount_cents: Optional[int],
    buyer_email: Optional[str] = None,
    customer_ref: Optional[str] = None,
    buyer_id: Optional[int] = None,
    path: str = "webhook",
) -> Optional[int]:
    """Record a paid checkout session as a paid order and return its id.

    Resolution order:
      1. metadata order_id names a pending order -> move it to paid
      2. an order already carries session_ref -> return it
      3. insert a new paid order (buyer resolved from email/customer if needed)

    buyer_id, when given, is the authenticated caller and wins over metadata.
    Returns None only when nothing identifies the product being bought.
    Database errors propagate so the webhook sender retries.
    """
    if not session_ref:
        raise ValueError("Checkout session id is required")
    metadata = metadata or {}

    # 1. Pending order created at checkout time
    order_id = _int_or_none(metadata.get("order_id"))
    if order_id:
        try:
            moved = db.query(Order).filter(
                Order.id == order_id,
                Order.status.in_(PAYABLE_STATUSES),
                or_(Order.stripe_checkout_session_id.is_(None), Order.stripe_checkout_session_id == session_ref)
            ).update({
                Order.status: "paid",
                Order.stripe_payment_intent_id: func.coalesce(Order.stripe_payment_intent_id, payment_ref),
                Order.stripe_checkout_session_id: session_ref,
            }, synchronize_session=False)
            db.commit()
        except IntegrityError:
            # Another order already owns this session id; step 2 finds it
            db.rollback()
            moved = 0

        if moved == 1:
            reconcile_logger.info(f"Order {order_id} marked paid from session {session_ref} via {path}")
            orders_reconciled_counter.labels(path=path, outcome="pending_to_paid").inc()
            _after_paid(db, order_id)
            return order_id

    # 2. Idempotent re-entry
    existing = db.query(Order).filter(Order.stripe_checkout_session_id == session_ref).first()
    if existing:
        if existing.status in PAYABLE_STATUSES:
            moved = db.query(Order).filter(
                Order.id == existing.id,
                Order.status.in_(PAYABLE_STATUSES)
            ).update({
                Order.status: "paid",
                Order.stripe_payment_intent_id: func.coalesce(Order.stripe_payment_intent_id, payment_ref),
            }, synchronize_session=False)
            db.commit()
            if moved == 1:
                orders_reconciled_counter.labels(path=path, outcome="pending_to_paid").inc()
                _after_paid(db, existing.id)
                return existing.id
        orders_reconciled_counter.labels(path=path, outcome="existing").inc()
        return existing.id

    # 3. First signal for this session
    product_id = _int_or_none(metadata.get("product_id"))
    if not product_id:
        reconcile_logger.warning(f"Session {session_ref} has no order_id or product_id metadata, cannot record order")
        orders_reconciled_counter.labels(path=path, outcome="skipped").inc()
        return None

    if buyer_id is None:
        buyer_id = _int_or_none(metadata.get("buyer_id"))
    if buyer_id is None:
        buyer_id = resolve_buyer(db, email=buyer_email, customer_ref=customer_ref)

    now = utc_now()
    stmt = upsert_insert(db, Order).values(
        buyer_id=buyer_id,
        product_id=product_id,
        amount_cents=int(amount_cents or 0),
        status="paid",
        stripe_payment_intent_id=payment_ref,
        stripe_checkout_session_id=session_ref,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["stripe_checkout_session_id"])

    try:
        created = db.execute(stmt).rowcount == 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    order_id = db.query(Order.id).filter(Order.stripe_checkout_session_id == session_ref).scalar()
    if created:
        reconcile_logger.info(f"Inserted paid order {order_id} for session {session_ref} via {path}")
        orders_reconciled_counter.labels(path=path, outcome="inserted").inc()
        _after_paid(db, order_id)
    else:
        orders_reconciled_counter.labels(path=path, outcome="existing").inc()
    return order_id


def reconcile_paid_payment_intent(db: Session, order_id: int, payment_ref: Optional[str]) -> bool:
    """payment_intent.succeeded for an order created at checkout. True if it moved to paid."""
    moved = db.query(Order).filter(
        Order.id == order_id,
        Order.status.in_(PAYABLE_STATUSES)
    ).update({
        Order.status: "paid",
        Order.stripe_payment_intent_id: func.coalesce(Order.stripe_payment_intent_id, payment_ref),
    }, synchronize_session=False)
    db.commit()

    if moved == 1:
        reconcile_logger.info(f"Order {order_id} marked paid from payment intent {payment_ref}")
        orders_reconciled_counter.labels(path="payment_intent", outcome="pending_to_paid").inc()
        _after_paid(db, order_id)
        return True
    return False


def create_free_order(db: Session, buyer_id: int, product: Product, action: str = "purchase") -> int:
    """Zero-price purchase: no Stripe call, same reconciliation path with a synthesized session id"""
    session_ref = f"{FREE_SESSION_PREFIX}{uuid.uuid4().hex}"
    metadata = {
        "action": action,
        "product_id": str(product.id),
        "creator_id": str(product.creator_id),
        "buyer_id": str(buyer_id),
    }
    return reconcile_paid_checkout(
        db, session_ref, metadata, payment_ref=None, amount_cents=0, buyer_id=buyer_id, path="free"
    )


def create_pending_order(db: Session, buyer_id: int, product: Product) -> Order:
    """Order row created before redirecting to Stripe Checkout"""
    order = Order(
        buyer_id=buyer_id,
        product_id=product.id,
        amount_cents=product.price_cents,
        status="pending",
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def attach_session_to_order(db: Session, order_id: int, session_ref: str) -> None:
    db.query(Order).filter(
        Order.id == order_id,
        Order.stripe_checkout_session_id.is_(None)
    ).update({Order.stripe_checkout_session_id: session_ref}, synchronize_session=False)
    db.commit()


def get_order_by_session(db: Session, session_ref: str) -> Optional[Order]:
    return db.query(Order).filter(Order.stripe_checkout_session_id == session_ref).first()
