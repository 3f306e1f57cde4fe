"""Notification models"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey, Index
from datetime import datetime, timezone
from app.models.base import Base


class Notification(Base):
    """In-app notification shown to a user"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)  # 'purchase', 'creator_sale', 'membership', 'renewal_reminder', ...
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    notification_metadata = Column(JSON, default=dict)  # order_id / stripe_subscription_id etc.
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_notifications_user_created', 'user_id', 'created_at'),
    )


class NotificationDispatch(Base):
    """Delivery log keyed by dedup key (e.g. 'creator_sale:order:42'); insert-or-ignore claims a send"""
    __tablename__ = "notification_dispatches"

    id = Column(Integer, primary_key=True, index=True)
    dedup_key = Column(String(255), unique=True, nullable=False)
    notification_type = Column(String(50), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
