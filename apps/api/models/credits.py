"""UserCredits model: the current spendable balance of a user."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class UserCredits(Base):
    """
    remaining_credits is the authoritative balance. total_credits and
    used_credits are informational and are reset on expiry.
    """

    __tablename__ = "user_credits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    total_credits = Column(Integer, nullable=False, default=0)
    used_credits = Column(Integer, nullable=False, default=0)
    remaining_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credits")
