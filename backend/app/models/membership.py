"""Membership model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

# Mirrors Stripe subscription statuses; no local-only states
MEMBERSHIP_STATUSES = ("trialing", "active", "past_due", "canceled", "incomplete")
ACCESS_STATUSES = ("active", "trialing", "past_due")


class Membership(Base):
    """Recurring relationship between a buyer and a creator's membership product"""
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True)  # NULL for free memberships
    status = Column(String(20), nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)  # Set once, never cleared
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    buyer = relationship("User", foreign_keys=[buyer_id])
    creator = relationship("User", foreign_keys=[creator_id])
    product = relationship("Product")

    __table_args__ = (
        UniqueConstraint('buyer_id', 'creator_id', 'product_id', name='uq_memberships_buyer_creator_product'),
    )
