"""Order model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

# Forward-only: pending -> paid -> complete. 'created' is a legacy spelling of pending.
ORDER_STATUSES = ("pending", "paid", "complete", "failed")
PAYABLE_STATUSES = ("pending", "created")


class Order(Base):
    """One-time purchase or custom request"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)
    # Idempotency key for inserts: at most one order per checkout session
    stripe_checkout_session_id = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    buyer = relationship("User", foreign_keys=[buyer_id])
    product = relationship("Product")

    __table_args__ = (
        Index('ix_orders_buyer_created', 'buyer_id', 'created_at'),
    )
