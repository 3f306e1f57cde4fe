"""AccountClaimToken model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class AccountClaimToken(Base):
    """One-time link letting a guest buyer set a password on their placeholder account"""
    __tablename__ = "account_claim_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)  # sha256 hex of the emailed token
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", back_populates="claim_tokens")

    __table_args__ = (
        Index('ix_account_claim_tokens_user_open', 'user_id', 'consumed_at'),
    )
