"""Wallet model: cached balance projection of the credit ledger."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class Wallet(Base):
    """Per-user credit balance and lifetime-earned counter."""

    __tablename__ = "user_wallets"

    user_id = Column(String, primary_key=True)
    balance_credits = Column(Integer, nullable=False, default=0)
    lifetime_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
