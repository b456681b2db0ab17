"""CreditLedger model: append-only record of balance-affecting events."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_ledger"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    case_id = Column(String, nullable=True, index=True)
    action_type = Column(String, nullable=False)
    delta = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String, nullable=True, index=True)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (
        Index("ix_credit_ledger_user_action_created", "user_id", "action_type", "created_at"),
        Index("ix_credit_ledger_user_action_key", "user_id", "action_type", "idempotency_key"),
    )
