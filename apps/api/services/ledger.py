"""Credit ledger store: append-only writes and replay queries."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from services.periods import isoformat_or_none, period_bounds, utcnow


async def get_ledger_balance(user_id: str, db: AsyncSession) -> int:
    """Replay the ledger: the balance is the sum of every committed delta."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def append_entry(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    delta: int,
    case_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> CreditLedger:
    payload = dict(meta or {})
    if idempotency_key:
        payload["idempotency_key"] = idempotency_key
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        case_id=case_id,
        action_type=action_type,
        delta=int(delta),
        idempotency_key=idempotency_key,
        meta=payload,
        created_at=now or utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def find_keyed_entry(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    idempotency_key: str,
    since: datetime,
) -> Optional[CreditLedger]:
    result = await db.execute(
        select(CreditLedger)
        .where(
            CreditLedger.user_id == user_id,
            CreditLedger.action_type == action_type,
            CreditLedger.idempotency_key == idempotency_key,
            CreditLedger.created_at >= since,
        )
        .order_by(CreditLedger.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_monthly_refill(user_id: str, db: AsyncSession, *, action_type: str, now: datetime) -> bool:
    """True when the calendar month containing ``now`` already has a monthly refill row."""
    month_start, month_end = period_bounds(now)
    result = await db.execute(
        select(CreditLedger.meta).where(
            CreditLedger.user_id == user_id,
            CreditLedger.action_type == action_type,
            CreditLedger.created_at >= month_start,
            CreditLedger.created_at < month_end,
        )
    )
    return any((meta or {}).get("reason") == "monthly_refill" for meta in result.scalars().all())


async def recent_entries(user_id: str, db: AsyncSession, *, limit: int = 30) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return [
        {
            "id": entry.id,
            "action_type": entry.action_type,
            "case_id": entry.case_id,
            "delta": entry.delta,
            "meta": {key: value for key, value in (entry.meta or {}).items() if key != "result"},
            "created_at": isoformat_or_none(entry.created_at),
        }
        for entry in result.scalars().all()
    ]


def window_start(now: datetime, window_seconds: int) -> datetime:
    return now - timedelta(seconds=max(int(window_seconds), 0))
