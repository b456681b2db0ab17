"""Wallet projection: balance and lifetime counters kept beside the ledger."""

from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.wallet import Wallet
from services.rows import insert_if_absent


async def get_wallet(user_id: str, db: AsyncSession) -> Optional[Wallet]:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    return result.scalar_one_or_none()


async def lock_wallet(user_id: str, db: AsyncSession) -> Wallet:
    """Return the user's wallet row locked FOR UPDATE, creating it on first use."""
    await insert_if_absent(
        db,
        Wallet,
        {"user_id": user_id, "balance_credits": 0, "lifetime_credits": 0},
        ["user_id"],
    )
    result = await db.execute(
        select(Wallet).where(Wallet.user_id == user_id).with_for_update().execution_options(populate_existing=True)
    )
    return result.scalar_one()


def debit(wallet: Wallet, amount: int) -> int:
    wallet.balance_credits = int(wallet.balance_credits or 0) - max(int(amount), 0)
    return wallet.balance_credits


def credit(wallet: Wallet, amount: int) -> int:
    grant = max(int(amount), 0)
    wallet.balance_credits = int(wallet.balance_credits or 0) + grant
    wallet.lifetime_credits = int(wallet.lifetime_credits or 0) + grant
    return wallet.balance_credits


def wallet_snapshot(wallet: Optional[Wallet]) -> Dict[str, Any]:
    return {
        "balance_credits": int(wallet.balance_credits or 0) if wallet else 0,
        "lifetime_credits": int(wallet.lifetime_credits or 0) if wallet else 0,
    }
