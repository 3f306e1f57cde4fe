"""Product model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from app.models.base import Base

PRODUCT_TYPES = ("download", "request", "membership")


class Product(Base):
    """Something a creator sells. Catalog editing is handled elsewhere."""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    product_type = Column(String(20), nullable=False)  # see PRODUCT_TYPES
    price_cents = Column(Integer, nullable=False, default=0)  # 0 = free
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    creator = relationship("User", back_populates="products")
