"""User model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base


class User(Base):
    """User accounts, including placeholder accounts for guest buyers"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)  # Stored lowercased
    password_hash = Column(String(255), nullable=True)
    is_ghost = Column(Boolean, default=False, nullable=False)  # Created by checkout, not yet claimed
    role = Column(String(20), default="user", nullable=False)  # 'user', 'creator', 'admin'
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_account_id = Column(String(255), nullable=True, unique=True, index=True)  # Connect account (creators)
    email_notifications_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    claim_tokens = relationship("AccountClaimToken", back_populates="user", cascade="all, delete-orphan")
    creator_profile = relationship("CreatorProfile", back_populates="user", uselist=False, cascade="all, delete-orphan")
    products = relationship("Product", back_populates="creator", cascade="all, delete-orphan")
    connect_account = relationship("StripeConnectAccount", back_populates="user", uselist=False, cascade="all, delete-orphan")
