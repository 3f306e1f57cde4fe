"""Authentication helpers - password hashing, credential checks, sessions

Login and registration routes live in the account service; this module only
holds what payment reconciliation and account claiming need.
"""
import bcrypt
import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session

from app.db.redis import set_session
from app.models.user import User

logger = logging.getLogger(__name__)

# Placeholder credential for accounts created by guest checkout. Not a bcrypt
# hash, so no password can ever verify against it.
GHOST_CREDENTIAL_PREFIX = "!ghost$"


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def make_ghost_credential() -> str:
    """Unguessable, unusable credential for a placeholder account"""
    return f"{GHOST_CREDENTIAL_PREFIX}{secrets.token_hex(32)}"


def is_ghost_credential(password_hash: Optional[str]) -> bool:
    return bool(password_hash) and password_hash.startswith(GHOST_CREDENTIAL_PREFIX)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password or is_ghost_credential(password_hash):
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Not a bcrypt hash
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


def authenticate_user(email: str, password: str, db: Session) -> Optional[User]:
    """Authenticate a user by email and password. Unclaimed accounts never authenticate."""
    user = get_user_by_email(email, db)
    if not user or user.is_ghost:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.query(User).filter(User.email == normalized).first()


def create_user(email: str, password: Optional[str], db: Session, role: str = "user") -> User:
    """Create a regular (claimed) account"""
    normalized = normalize_email(email)
    if not normalized:
        raise ValueError("Email is required")
    if get_user_by_email(normalized, db):
        raise ValueError("Email already registered")

    user = User(
        email=normalized,
        password_hash=hash_password(password) if password else None,
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_session(user_id: int) -> str:
    """Create a new session for a user

    Returns:
        str: Session ID
    """
    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user_id)
    return session_id
