"""Stripe Connect account sync - creator payout capability flags

Three triggers reach sync_account_state(): the creator pressing "sync",
the OAuth onboarding return, and account.updated webhooks.
"""
import logging
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings, STRIPE_CONNECT_AUTHORIZE_URL
from app.core.exceptions import NotFoundError
from app.core.metrics import connect_syncs_counter
from app.db.helpers import upsert_insert, utc_now, as_utc
from app.db.redis import set_connect_oauth_state, pop_connect_oauth_state
from app.models.connect_account import StripeConnectAccount
from app.models.user import User
from app.services import stripe_service
from app.services.creator_status import recompute_creator_active
from app.services.stripe_service import get_stripe_value

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


def sync_account_state(db: Session, creator_id: int, account: Any, trigger: str = "manual") -> StripeConnectAccount:
    """Upsert the capability snapshot for a creator.

    connected_at is stamped the first time details_submitted is seen true and
    never changes afterwards.
    """
    account_id = get_stripe_value(account, "id")
    details_submitted = bool(get_stripe_value(account, "details_submitted", False))
    now = utc_now()

    table = StripeConnectAccount.__table__
    stmt = upsert_insert(db, StripeConnectAccount).values(
        user_id=creator_id,
        stripe_account_id=account_id,
        details_submitted=details_submitted,
        charges_enabled=bool(get_stripe_value(account, "charges_enabled", False)),
        payouts_enabled=bool(get_stripe_value(account, "payouts_enabled", False)),
        connected_at=now if details_submitted else None,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={
            "stripe_account_id": func.coalesce(stmt.excluded.stripe_account_id, table.c.stripe_account_id),
            "details_submitted": stmt.excluded.details_submitted,
            "charges_enabled": stmt.excluded.charges_enabled,
            "payouts_enabled": stmt.excluded.payouts_enabled,
            "connected_at": func.coalesce(table.c.connected_at, stmt.excluded.connected_at),
            "updated_at": stmt.excluded.updated_at,
        },
    )
    try:
        db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        raise

    connect_syncs_counter.labels(trigger=trigger).inc()
    logger.info(
        f"Synced Connect account {account_id} for creator {creator_id} ({trigger}): "
        f"details_submitted={details_submitted}"
    )

    # Eligibility is derived state; a failure here must not fail the sync
    try:
        recompute_creator_active(db, creator_id)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to recompute creator {creator_id} status: {e}", exc_info=True)

    return db.query(StripeConnectAccount).filter(StripeConnectAccount.user_id == creator_id).first()


def find_creator_for_account(db: Session, account_id: str) -> Optional[int]:
    row = db.query(StripeConnectAccount.user_id).filter(
        StripeConnectAccount.stripe_account_id == account_id
    ).first()
    if row:
        return row[0]
    row = db.query(User.id).filter(User.stripe_account_id == account_id).first()
    return row[0] if row else None


def handle_account_updated(db: Session, account: Any) -> Optional[int]:
    """account.updated webhook. Accounts we never linked are ignored."""
    account_id = get_stripe_value(account, "id")
    if not account_id:
        return None
    creator_id = find_creator_for_account(db, account_id)
    if creator_id is None:
        logger.info(f"account.updated for unlinked account {account_id}, ignoring")
        return None
    sync_account_state(db, creator_id, account, trigger="webhook")
    return creator_id


def create_connect_link(user_id: int) -> str:
    """Stripe-hosted OAuth URL; the state value is bound to the creator for 10 minutes"""
    if not settings.STRIPE_CONNECT_CLIENT_ID:
        raise ValueError("Stripe Connect is not configured")
    state = secrets.token_urlsafe(32)
    set_connect_oauth_state(state, user_id)
    query = urlencode({
        "response_type": "code",
        "client_id": settings.STRIPE_CONNECT_CLIENT_ID,
        "scope": "read_write",
        "state": state,
        "redirect_uri": f"{settings.BACKEND_URL.rstrip('/')}/api/stripe-connect/oauth/callback",
    })
    return f"{STRIPE_CONNECT_AUTHORIZE_URL}?{query}"


def complete_connect_oauth(db: Session, code: str, state: str) -> StripeConnectAccount:
    """OAuth return: exchange the code, link the account, then sync its flags

    Raises:
        ValueError: unknown or expired state
        ProcessorError: Stripe rejected the exchange
    """
    user_id = pop_connect_oauth_state(state) if state else None
    if not user_id:
        security_logger.warning("Connect OAuth callback with unknown or expired state")
        raise ValueError("Invalid or expired OAuth state")

    account_id = stripe_service.exchange_connect_code(code)

    owner = db.query(User.id).filter(User.stripe_account_id == account_id, User.id != user_id).first()
    if owner:
        security_logger.warning(f"Connect account {account_id} already linked to user {owner[0]}, refusing for {user_id}")
        raise ValueError("This Stripe account is already linked to another creator")

    db.query(User).filter(User.id == user_id).update(
        {User.stripe_account_id: account_id}, synchronize_session=False
    )
    db.commit()

    account = stripe_service.retrieve_account(account_id)
    return sync_account_state(db, user_id, account, trigger="oauth")


def _linked_account_id(db: Session, user_id: int) -> Optional[str]:
    account_id = db.query(StripeConnectAccount.stripe_account_id).filter(
        StripeConnectAccount.user_id == user_id
    ).scalar()
    if account_id:
        return account_id
    return db.query(User.stripe_account_id).filter(User.id == user_id).scalar()


def sync_for_creator(db: Session, user_id: int) -> StripeConnectAccount:
    """Creator-initiated refresh from Stripe"""
    account_id = _linked_account_id(db, user_id)
    if not account_id:
        raise NotFoundError("No Stripe account connected")
    account = stripe_service.retrieve_account(account_id)
    return sync_account_state(db, user_id, account, trigger="manual")


def get_connect_status(db: Session, user_id: int) -> Dict[str, Any]:
    account = db.query(StripeConnectAccount).filter(StripeConnectAccount.user_id == user_id).first()
    if not account:
        return {
            "connected": False,
            "stripe_account_id": _linked_account_id(db, user_id),
            "details_submitted": False,
            "charges_enabled": False,
            "payouts_enabled": False,
            "connected_at": None,
        }
    connected_at = as_utc(account.connected_at)
    return {
        "connected": connected_at is not None,
        "stripe_account_id": account.stripe_account_id,
        "details_submitted": account.details_submitted,
        "charges_enabled": account.charges_enabled,
        "payouts_enabled": account.payouts_enabled,
        "connected_at": connected_at.isoformat() if connected_at else None,
    }
