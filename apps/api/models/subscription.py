"""Subscription model: the entitlement window a user holds for one tier."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


SUBSCRIPTION_STATUSES = ("active", "cancelled", "expired", "pending")


class Subscription(Base):
    """
    Renewing subscriptions have auto_renew=True and no end_date; their periods
    are advanced by processor webhooks. One-time purchases are stored as
    non-renewing rows with a fixed end_date and are rolled over on read.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "tier", name="uq_user_subscriptions_user_tier"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(String, ForeignKey("user_orders.id", ondelete="CASCADE"), nullable=False, index=True)

    tier = Column(String, nullable=False)
    interval = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="subscriptions")
    order = relationship("Order")
