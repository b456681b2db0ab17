"""Monthly usage counters.

Rows are keyed by calendar month and created on first use, so a new month
reads as all-zero counters without any reset job.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.usage_counter import UsageCounter
from services.periods import current_period_key
from services.rows import insert_if_absent


EMPTY_USAGE: Dict[str, int] = {
    "cases_created": 0,
    "credits_spent": 0,
    "ai_sessions_started": 0,
}


async def get_usage(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read-only usage for the month containing ``now``; missing rows read as zero."""
    period_key = current_period_key(now)
    result = await db.execute(
        select(UsageCounter).where(UsageCounter.user_id == user_id, UsageCounter.ym == period_key)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return {"ym": period_key, **EMPTY_USAGE}
    return usage_snapshot(row)


async def lock_usage_counter(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> UsageCounter:
    """Return this month's counter row locked FOR UPDATE, creating it on first use."""
    period_key = current_period_key(now)
    await insert_if_absent(
        db,
        UsageCounter,
        {"id": str(uuid.uuid4()), "user_id": user_id, "ym": period_key, **EMPTY_USAGE},
        ["user_id", "ym"],
    )
    result = await db.execute(
        select(UsageCounter)
        .where(UsageCounter.user_id == user_id, UsageCounter.ym == period_key)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def usage_snapshot(row: UsageCounter) -> Dict[str, Any]:
    return {
        "ym": row.ym,
        "cases_created": int(row.cases_created or 0),
        "credits_spent": int(row.credits_spent or 0),
        "ai_sessions_started": int(row.ai_sessions_started or 0),
    }
