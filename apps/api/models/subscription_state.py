"""Billing provider subscription snapshot (owned by the billing webhook)."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionState(Base):
    """Last known billing state for a user. Read-only for the metering core."""

    __tablename__ = "subscriptions_state"

    user_id = Column(String, primary_key=True)
    plan = Column(String, nullable=False, default="free")
    status = Column(String, nullable=False, default="active")
    is_active = Column(Boolean, nullable=False, default=True)
    monthly_case_limit = Column(Integer, nullable=True)
    monthly_credit_refill = Column(Integer, nullable=False, default=0)
    period_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
