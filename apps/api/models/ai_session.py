"""AI session model used to amortize chat cost across a burst of messages."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String

from database import Base


class AISession(Base):
    """Time-boxed, message-capped AI session for one (user, case) pair."""

    __tablename__ = "ai_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    case_id = Column(String, nullable=False)
    ym = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    message_count = Column(Integer, nullable=False, default=0)
    max_messages = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_idempotency_key = Column(String, nullable=True)
    last_result = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_ai_sessions_user_case_active", "user_id", "case_id", "is_active"),
    )
