"""Monthly usage counter model."""

import uuid

from sqlalchemy import Column, Integer, String, UniqueConstraint

from database import Base


class UsageCounter(Base):
    """Per-user aggregate for one calendar month (``ym`` = ``YYYY-MM``)."""

    __tablename__ = "usage_counters_monthly"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    ym = Column(String, nullable=False)
    cases_created = Column(Integer, nullable=False, default=0)
    credits_spent = Column(Integer, nullable=False, default=0)
    ai_sessions_started = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "ym", name="uq_usage_counters_monthly_user_ym"),
    )
