"""Order model: one row per purchase recorded from the payment processor."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from datetime import datetime, timezone

from database import Base


ORDER_STATUSES = ("pending", "paid", "failed", "cancelled", "refunded")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """Purchase record. Payment facts are immutable once the order is paid."""

    __tablename__ = "user_orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    plan_id = Column(String, nullable=False)
    tier = Column(String, nullable=False)
    charge_type = Column(String, nullable=False)
    interval = Column(String, nullable=False)

    status = Column(String, nullable=False, default="pending", index=True)

    original_price = Column(Float, nullable=False)
    final_price = Column(Float, nullable=False)
    currency = Column(String, nullable=False, default="USD")

    payment_method = Column(String, nullable=True)
    external_order_id = Column(String, nullable=True)
    external_transaction_id = Column(String, nullable=True, index=True)
    checkout_session_id = Column(String, nullable=True, index=True)

    order_date = Column(DateTime(timezone=True), nullable=False)
    paid_date = Column(DateTime(timezone=True), nullable=True)

    credits_amount = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    user = relationship("User", back_populates="orders")
