"""CreditHistory model for the append-only balance audit trail."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_SOURCES = ("registration", "order", "gift", "promotion", "refund", "generation")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditHistory(Base):
    """Immutable credit history entry."""

    __tablename__ = "user_credit_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False)
    change_amount = Column(Integer, nullable=False)
    before_credits = Column(Integer, nullable=False)
    after_credits = Column(Integer, nullable=False)
    order_id = Column(String, ForeignKey("user_orders.id", ondelete="SET NULL"), nullable=True, index=True)
    subscription_id = Column(String, ForeignKey("user_subscriptions.id", ondelete="SET NULL"), nullable=True)
    generation_id = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_history")
