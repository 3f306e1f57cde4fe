"""Stripe service - every outbound call to Stripe goes through here

Callers get plain values back and see only the errors from
app.core.exceptions, never stripe exception classes.
"""
import logging
from typing import Any, Dict, List, Optional

import stripe

from app.core.config import settings
from app.core.exceptions import ProcessorError, SessionNotFoundError, WebhookSignatureError

logger = logging.getLogger(__name__)

# Configure Stripe
stripe.api_key = settings.STRIPE_SECRET_KEY
# Network errors and timeouts are retried by the SDK with idempotency keys
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES


def get_stripe_value(obj: Any, key: str, default=None):
    """Safely extract value from a Stripe object or a plain dict"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, None)
    return default if value is None else value


def get_stripe_id(value: Any) -> Optional[str]:
    """Fields like `customer` are either an id string or an expanded object"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_stripe_value(value, "id")


def get_metadata(obj: Any) -> Dict[str, str]:
    """Metadata as a plain str -> str dict (empty if missing)"""
    meta = get_stripe_value(obj, "metadata")
    if not meta:
        return {}
    if not isinstance(meta, dict) and hasattr(meta, "to_dict"):
        meta = meta.to_dict()
    return {str(k): str(v) for k, v in dict(meta).items() if v is not None}


def construct_event(payload: bytes, sig_header: str):
    """Verify a webhook signature against the configured secrets and parse the event

    Raises:
        WebhookSignatureError: signature invalid, secret missing or payload malformed
    """
    secrets = [s for s in (settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_CONNECT_WEBHOOK_SECRET) if s]
    if not secrets:
        raise WebhookSignatureError("Webhook secret not configured")

    last_error = None
    for secret in secrets:
        try:
            return stripe.Webhook.construct_event(payload, sig_header, secret)
        except stripe.SignatureVerificationError as e:
            last_error = e
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook payload") from e
    raise WebhookSignatureError("Invalid webhook signature") from last_error


def _wrap_stripe_error(description: str, error: Exception):
    if isinstance(error, stripe.InvalidRequestError) and getattr(error, "code", None) == "resource_missing":
        logger.warning(f"{description}: not found at Stripe")
        return SessionNotFoundError(f"{description}: not found")
    logger.error(f"{description} failed: {error}")
    return ProcessorError(f"{description} failed")


def retrieve_checkout_session(session_id: str):
    """Checkout session with payment_intent and subscription expanded"""
    try:
        return stripe.checkout.Session.retrieve(session_id, expand=["payment_intent", "subscription"])
    except stripe.StripeError as e:
        raise _wrap_stripe_error(f"Retrieve checkout session {session_id}", e) from e


def create_checkout_session(params: Dict[str, Any], idempotency_key: str):
    try:
        return stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
    except stripe.StripeError as e:
        raise _wrap_stripe_error("Create checkout session", e) from e


def retrieve_subscription(subscription_id: str):
    try:
        return stripe.Subscription.retrieve(subscription_id)
    except stripe.StripeError as e:
        raise _wrap_stripe_error(f"Retrieve subscription {subscription_id}", e) from e


def set_cancel_at_period_end(subscription_id: str, cancel: bool = True):
    """Ask Stripe to stop (or resume) renewal at the end of the current period"""
    try:
        return stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
    except stripe.StripeError as e:
        raise _wrap_stripe_error(f"Update subscription {subscription_id}", e) from e


def retrieve_customer(customer_id: str):
    try:
        return stripe.Customer.retrieve(customer_id)
    except stripe.StripeError as e:
        raise _wrap_stripe_error(f"Retrieve customer {customer_id}", e) from e


def retrieve_account(account_id: str):
    try:
        return stripe.Account.retrieve(account_id)
    except stripe.StripeError as e:
        raise _wrap_stripe_error(f"Retrieve account {account_id}", e) from e


def exchange_connect_code(code: str) -> str:
    """Finish Connect OAuth; returns the connected account id"""
    try:
        response = stripe.OAuth.token(grant_type="authorization_code", code=code)
    except stripe.StripeError as e:
        raise _wrap_stripe_error("Connect OAuth token exchange", e) from e
    account_id = get_stripe_value(response, "stripe_user_id")
    if not account_id:
        raise ProcessorError("Connect OAuth response did not include an account id")
    return account_id


def subscription_period_end(subscription: Any) -> Optional[int]:
    """current_period_end as a unix timestamp

    Newer API versions report the period on subscription items instead of
    the subscription itself.
    """
    value = get_stripe_value(subscription, "current_period_end")
    if value:
        return int(value)
    items = get_stripe_value(subscription, "items")
    data: List[Any] = get_stripe_value(items, "data", []) if items is not None else []
    ends = [get_stripe_value(item, "current_period_end") for item in data]
    ends = [int(e) for e in ends if e]
    return max(ends) if ends else None


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id of an invoice across API versions"""
    sub = get_stripe_id(get_stripe_value(invoice, "subscription"))
    if sub:
        return sub
    parent = get_stripe_value(invoice, "parent")
    details = get_stripe_value(parent, "subscription_details")
    return get_stripe_id(get_stripe_value(details, "subscription"))
