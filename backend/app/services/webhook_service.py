"""Stripe webhook processing - verify, deduplicate, dispatch

Each known event type maps to one EventKind; everything else is IGNORED.
Every kind must have a handler, checked at import time.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from app.core.metrics import webhook_events_counter
from app.core.otel import get_tracer
from app.services import stripe_service
from app.services.checkout_service import mode_for_action, SESSION_MODES
from app.services.connect_service import handle_account_updated
from app.services.event_ledger import mark_if_new, release_event
from app.services.finalize_service import session_buyer_email, PAID_STATUSES
from app.services.membership_service import apply_subscription_state, apply_invoice_paid
from app.services.notification_service import discard_pending_tasks
from app.services.order_service import reconcile_paid_checkout, reconcile_paid_payment_intent
from app.services.stripe_service import get_stripe_value, get_stripe_id, get_metadata

logger = logging.getLogger(__name__)
webhook_logger = logging.getLogger("webhook")


class EventKind(Enum):
    ACCOUNT_UPDATED = "account_updated"
    CHECKOUT_SESSION_COMPLETED = "checkout_session_completed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent_succeeded"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    IGNORED = "ignored"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        return EVENT_TYPES.get(event_type, cls.IGNORED)


EVENT_TYPES = {
    "account.updated": EventKind.ACCOUNT_UPDATED,
    "checkout.session.completed": EventKind.CHECKOUT_SESSION_COMPLETED,
    "checkout.session.async_payment_succeeded": EventKind.CHECKOUT_SESSION_COMPLETED,
    "payment_intent.succeeded": EventKind.PAYMENT_INTENT_SUCCEEDED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
}


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    kind: EventKind
    data: Any

    @classmethod
    def from_stripe(cls, event: Any) -> "WebhookEvent":
        event_id = get_stripe_value(event, "id")
        event_type = get_stripe_value(event, "type") or ""
        if not event_id:
            raise ValueError("Webhook event has no id")
        data = get_stripe_value(get_stripe_value(event, "data"), "object")
        return cls(id=event_id, type=event_type, kind=EventKind.from_type(event_type), data=data)


def _handle_account_updated(db: Session, account: Any) -> None:
    handle_account_updated(db, account)


def _handle_checkout_completed(db: Session, session: Any) -> None:
    session_id = get_stripe_value(session, "id")
    if get_stripe_value(session, "payment_status") not in PAID_STATUSES:
        # Delayed payment methods complete later via async_payment_succeeded
        webhook_logger.info(f"Checkout session {session_id} completed but not paid yet")
        return

    mode = get_stripe_value(session, "mode")
    if mode not in SESSION_MODES:
        webhook_logger.warning(f"Checkout session {session_id} has unsupported mode {mode}; skipped")
        return
    recorded_action = get_metadata(session).get("action")
    if recorded_action and mode_for_action(recorded_action) != mode:
        webhook_logger.warning(
            f"Checkout session {session_id} mode {mode} does not match recorded action {recorded_action}; skipped"
        )
        return

    if mode == "subscription":
        sub_id = get_stripe_id(get_stripe_value(session, "subscription"))
        if sub_id:
            apply_subscription_state(db, stripe_service.retrieve_subscription(sub_id))
        return

    reconcile_paid_checkout(
        db,
        session_id,
        get_metadata(session),
        payment_ref=get_stripe_id(get_stripe_value(session, "payment_intent")),
        amount_cents=get_stripe_value(session, "amount_total"),
        buyer_email=session_buyer_email(session),
        customer_ref=get_stripe_id(get_stripe_value(session, "customer")),
        path="webhook",
    )


def _handle_payment_intent_succeeded(db: Session, intent: Any) -> None:
    order_id = get_metadata(intent).get("order_id")
    if not order_id or not order_id.isdigit():
        return
    reconcile_paid_payment_intent(db, int(order_id), get_stripe_value(intent, "id"))


def _handle_subscription_created(db: Session, subscription: Any) -> None:
    apply_subscription_state(db, subscription, is_creation=True)


def _handle_subscription_updated(db: Session, subscription: Any) -> None:
    apply_subscription_state(db, subscription)


def _handle_subscription_deleted(db: Session, subscription: Any) -> None:
    apply_subscription_state(db, subscription, deleted=True)


def _handle_invoice_paid(db: Session, invoice: Any) -> None:
    apply_invoice_paid(db, invoice)


def _ignore(db: Session, obj: Any) -> None:
    pass


HANDLERS: Dict[EventKind, Callable[[Session, Any], None]] = {
    EventKind.ACCOUNT_UPDATED: _handle_account_updated,
    EventKind.CHECKOUT_SESSION_COMPLETED: _handle_checkout_completed,
    EventKind.PAYMENT_INTENT_SUCCEEDED: _handle_payment_intent_succeeded,
    EventKind.SUBSCRIPTION_CREATED: _handle_subscription_created,
    EventKind.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EventKind.INVOICE_PAID: _handle_invoice_paid,
    EventKind.IGNORED: _ignore,
}

_unhandled = set(EventKind) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No webhook handler for: {sorted(k.name for k in _unhandled)}")


def dispatch_event(db: Session, event: WebhookEvent) -> None:
    HANDLERS[event.kind](db, event.data)


def process_stripe_webhook(payload: bytes, sig_header: str, db: Session) -> Dict[str, Any]:
    """Process one Stripe webhook delivery

    Args:
        payload: Raw request body as bytes (must not be parsed before this)
        sig_header: Stripe-Signature header
        db: Database session

    Returns:
        Dict with status information

    Raises:
        WebhookSignatureError: signature or payload rejected, nothing processed
        Exception: any processing failure; the ledger entry is released so the
            redelivery is processed
    """
    event = WebhookEvent.from_stripe(stripe_service.construct_event(payload, sig_header))
    kind = event.kind.value

    if not mark_if_new(event.id, event.type, db):
        webhook_events_counter.labels(kind=kind, outcome="duplicate").inc()
        return {"status": "already_processed"}

    try:
        with get_tracer().start_as_current_span(
            "stripe.webhook", attributes={"stripe.event_id": event.id, "stripe.event_type": event.type}
        ):
            dispatch_event(db, event)
    except Exception as e:
        db.rollback()
        discard_pending_tasks(db)
        webhook_events_counter.labels(kind=kind, outcome="failed").inc()
        webhook_logger.error(f"Error processing webhook {event.id} ({event.type}): {e}", exc_info=True)
        try:
            release_event(event.id, db)
        except Exception as release_error:
            webhook_logger.error(f"Could not release ledger entry for {event.id}: {release_error}")
        raise

    outcome = "ignored" if event.kind is EventKind.IGNORED else "processed"
    webhook_events_counter.labels(kind=kind, outcome=outcome).inc()
    webhook_logger.info(f"Webhook {event.id} ({event.type}) {outcome}")
    return {"status": "success"}
