"""Buyer resolution - map Stripe customer/email identity to a local user

Guest checkouts produce placeholder ("ghost") accounts holding only an email
and an unusable credential. The buyer later claims the account through a
one-time link valid for CLAIM_TOKEN_TTL_DAYS.
"""
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import ghost_users_created_counter
from app.db.helpers import upsert_insert, utc_now, as_utc
from app.db.task_queue import enqueue_task, CLAIM_TOKEN_TASK
from app.models.claim_token import AccountClaimToken
from app.models.user import User
from app.services.auth_service import (
    normalize_email, make_ghost_credential, hash_password, get_user_by_email
)
from app.services.email_service import send_claim_account_email

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

MIN_PASSWORD_LENGTH = 8


def _hash_token(token: str) -> str:
    # Keyed so a leaked table cannot be checked against guessed tokens
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def attach_customer_ref(db: Session, user_id: int, customer_ref: str) -> bool:
    """Store a Stripe customer id on a user, only if the slot is empty or already equal.

    Returns False (and leaves the row alone) when the user is linked to a
    different customer, so one checkout cannot take over another account.
    """
    updated = db.query(User).filter(
        User.id == user_id,
        or_(User.stripe_customer_id.is_(None), User.stripe_customer_id == customer_ref)
    ).update({User.stripe_customer_id: customer_ref}, synchronize_session=False)
    db.commit()

    if updated != 1:
        security_logger.warning(
            f"Not linking Stripe customer {customer_ref} to user {user_id}: "
            f"user is already linked to a different customer"
        )
        return False
    return True


def _schedule_claim_invitation(user_id: int) -> None:
    # The ghost row is already committed; the token is issued by the worker
    try:
        enqueue_task(CLAIM_TOKEN_TASK, {"user_id": user_id})
    except Exception as e:
        logger.error(f"Failed to schedule claim invitation for user {user_id}: {e}", exc_info=True)


def resolve_buyer(db: Session, email: Optional[str] = None, customer_ref: Optional[str] = None) -> Optional[int]:
    """Return the local user id for a buyer, creating a ghost account for new emails.

    Returns None when neither identifier is supplied, or when only a customer
    ref is supplied and no user carries it.
    """
    normalized = normalize_email(email)

    if not normalized:
        if not customer_ref:
            return None
        row = db.query(User.id).filter(User.stripe_customer_id == customer_ref).order_by(User.id).first()
        return row[0] if row else None

    user = get_user_by_email(normalized, db)
    if user:
        if customer_ref and user.stripe_customer_id != customer_ref:
            attach_customer_ref(db, user.id, customer_ref)
        return user.id

    now = utc_now()
    stmt = upsert_insert(db, User).values(
        email=normalized,
        password_hash=make_ghost_credential(),
        is_ghost=True,
        role="user",
        stripe_customer_id=customer_ref,
        email_notifications_enabled=True,
        created_at=now,
        updated_at=now,
    ).on_conflict_do_nothing(index_elements=["email"])

    try:
        created = db.execute(stmt).rowcount == 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    user_id = db.query(User.id).filter(User.email == normalized).scalar()

    if created:
        ghost_users_created_counter.inc()
        logger.info(f"Created placeholder account {user_id} for guest buyer")
        _schedule_claim_invitation(user_id)
    elif customer_ref:
        # Lost the insert race to a concurrent resolution of the same email
        attach_customer_ref(db, user_id, customer_ref)

    return user_id


def issue_claim_token(db: Session, user_id: int) -> str:
    """Issue a fresh claim token, consuming every earlier open token for the user"""
    now = utc_now()
    db.query(AccountClaimToken).filter(
        AccountClaimToken.user_id == user_id,
        AccountClaimToken.consumed_at.is_(None)
    ).update({AccountClaimToken.consumed_at: now}, synchronize_session=False)

    token = secrets.token_urlsafe(32)
    db.add(AccountClaimToken(
        user_id=user_id,
        token_hash=_hash_token(token),
        expires_at=now + timedelta(days=settings.CLAIM_TOKEN_TTL_DAYS),
        created_at=now,
    ))
    db.commit()
    return token


def send_claim_invitation(db: Session, user_id: int) -> bool:
    """Worker entry point: issue a token and email the claim link"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_ghost:
        logger.info(f"User {user_id} is not an unclaimed account, no claim link sent")
        return False

    token = issue_claim_token(db, user_id)
    sent = send_claim_account_email(user.email, token, settings.CLAIM_TOKEN_TTL_DAYS)
    if not sent:
        logger.warning(f"Claim token issued for user {user_id} but the email was not delivered")
    return sent


def claim_account(db: Session, token: str, password: str) -> User:
    """Set a password on a ghost account using a claim token

    Raises:
        ValueError: password too short, or token unknown/consumed/expired
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    now = utc_now()
    token_row = db.query(AccountClaimToken).filter(
        AccountClaimToken.token_hash == _hash_token(token or "")
    ).first()
    if not token_row or token_row.consumed_at is not None or as_utc(token_row.expires_at) <= now:
        raise ValueError("Invalid or expired claim link")

    consumed = db.query(AccountClaimToken).filter(
        AccountClaimToken.id == token_row.id,
        AccountClaimToken.consumed_at.is_(None)
    ).update({AccountClaimToken.consumed_at: now}, synchronize_session=False)
    if consumed != 1:
        db.rollback()
        raise ValueError("Invalid or expired claim link")

    user = db.query(User).filter(User.id == token_row.user_id).first()
    user.password_hash = hash_password(password)
    user.is_ghost = False
    db.commit()
    db.refresh(user)

    logger.info(f"User {user.id} claimed their account")
    return user


def purge_expired_claim_tokens(db: Session) -> int:
    """Delete claim tokens that can no longer be used. The accounts themselves are kept."""
    now = utc_now()
    removed = db.query(AccountClaimToken).filter(
        or_(AccountClaimToken.expires_at < now, AccountClaimToken.consumed_at.isnot(None))
    ).delete(synchronize_session=False)
    db.commit()
    return removed
