"""Read-only plan views used for display and reconciliation.

``get_credit_status`` and ``get_entitlements`` are computed independently on
purpose: the first reads only the billing snapshot plus wallet and usage, the
second goes through the plan resolver (admin, overrides, billing). The
reconciliation monitor compares their paid/free projections. Neither view is
used for enforcement; only ``consume`` enforces.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.periods import as_utc, isoformat_or_none, next_period_start, utcnow
from services.plan_resolver import load_subscription_state, resolve_plan
from services.plans import (
    access_allowed,
    get_plan_limits,
    is_unlimited_plan,
    normalize_plan_key,
)
from services.usage import get_usage
from services.wallet import get_wallet, wallet_snapshot


async def get_credit_status(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = as_utc(now) or utcnow()
    subscription = await load_subscription_state(user_id, db)
    wallet = wallet_snapshot(await get_wallet(user_id, db))
    usage = await get_usage(user_id, db, now=current)

    plan = normalize_plan_key(subscription.plan if subscription else None)
    unlimited = is_unlimited_plan(plan)
    monthly_case_limit = subscription.monthly_case_limit if subscription else None
    if monthly_case_limit is None:
        monthly_case_limit = get_plan_limits(plan).max_cases
    if unlimited:
        monthly_case_limit = None

    cases_used = usage["cases_created"]
    cases_remaining = None if monthly_case_limit is None else max(0, monthly_case_limit - cases_used)
    return {
        "plan": plan,
        "is_active": bool(subscription.is_active) if subscription else True,
        "status": subscription.status if subscription else "active",
        "access_allowed": access_allowed(subscription.status) if subscription else True,
        "period_end": isoformat_or_none(subscription.period_end) if subscription else None,
        "monthly_case_limit": monthly_case_limit,
        "cases_used_this_month": cases_used,
        "cases_remaining": cases_remaining,
        "at_case_limit": cases_remaining is not None and cases_remaining <= 0,
        "credits_balance": wallet["balance_credits"],
        "lifetime_credits": wallet["lifetime_credits"],
        "credits_spent_this_month": usage["credits_spent"],
        "ai_sessions_this_month": usage["ai_sessions_started"],
        "monthly_credit_refill": int(subscription.monthly_credit_refill or 0) if subscription else 0,
        "next_refill_date": next_period_start(current).isoformat(),
    }


async def get_entitlements(
    user_id: str,
    db: AsyncSession,
    *,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    current = as_utc(now) or utcnow()
    resolved = await resolve_plan(user_id, db, is_admin=is_admin, now=current)
    subscription = await load_subscription_state(user_id, db)
    usage = await get_usage(user_id, db, now=current)
    status = subscription.status if subscription else "active"
    return {
        "role": "admin" if is_admin else "user",
        "plan": resolved.plan,
        "plan_source": resolved.source,
        "status": status,
        "access_allowed": access_allowed(status),
        "current_period_end": isoformat_or_none(subscription.period_end) if subscription else None,
        "limits": {
            "cases": resolved.limits.max_cases,
            "messages_per_session": resolved.limits.messages_per_session,
            "credit_costs": dict(resolved.limits.credit_costs),
        },
        "usage": {
            "cases_used": usage["cases_created"],
            "credits_spent": usage["credits_spent"],
            "ai_sessions_started": usage["ai_sessions_started"],
        },
    }
