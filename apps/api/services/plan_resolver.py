"""Effective plan resolution.

Three sources compete for a user's plan. They are checked strictly in order
and the first match wins:

1. admin allowlist -> ``unlimited`` (source ``admin``)
2. active, unexpired plan override (source ``override``)
3. billing subscription with a paid plan in a paid-label status (source ``billing``)
4. ``free`` (source ``default``)

Resolution only reads; it is safe to call on every request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.plan_override import PlanOverride
from models.subscription_state import SubscriptionState
from services.periods import as_utc, utcnow
from services.plans import (
    FREE_PLAN,
    UNLIMITED_PLAN,
    PlanLimits,
    get_plan_limits,
    is_paid_plan,
    is_unlimited_plan,
    normalize_plan_key,
    subscription_carries_paid_label,
)

logger = logging.getLogger(__name__)

PlanSource = Literal["admin", "override", "billing", "default"]


@dataclass(frozen=True)
class ResolvedPlan:
    plan: str
    source: PlanSource
    limits: PlanLimits

    @property
    def is_unlimited(self) -> bool:
        return is_unlimited_plan(self.plan)

    @property
    def is_paid(self) -> bool:
        return is_paid_plan(self.plan)


def override_is_live(override: Optional[PlanOverride], now: datetime) -> bool:
    if override is None or not override.is_active:
        return False
    expires_at = as_utc(override.expires_at)
    return expires_at is None or expires_at > now


def resolve_from_records(
    *,
    is_admin: bool,
    override: Optional[PlanOverride],
    subscription: Optional[SubscriptionState],
    now: datetime,
) -> ResolvedPlan:
    """Apply the priority order to already-loaded records."""
    if is_admin:
        return ResolvedPlan(plan=UNLIMITED_PLAN, source="admin", limits=get_plan_limits(UNLIMITED_PLAN))

    if override_is_live(override, now):
        plan = normalize_plan_key(override.plan_code)
        return ResolvedPlan(plan=plan, source="override", limits=get_plan_limits(plan))

    if subscription is not None:
        plan = normalize_plan_key(subscription.plan)
        if plan != FREE_PLAN and subscription_carries_paid_label(subscription.status):
            return ResolvedPlan(plan=plan, source="billing", limits=get_plan_limits(plan))

    return ResolvedPlan(plan=FREE_PLAN, source="default", limits=get_plan_limits(FREE_PLAN))


async def load_live_override(user_id: str, db: AsyncSession, now: datetime) -> Optional[PlanOverride]:
    result = await db.execute(
        select(PlanOverride)
        .where(PlanOverride.user_id == user_id, PlanOverride.is_active.is_(True))
        .order_by(PlanOverride.created_at.desc())
    )
    for override in result.scalars().all():
        if override_is_live(override, now):
            return override
    return None


async def load_subscription_state(user_id: str, db: AsyncSession) -> Optional[SubscriptionState]:
    result = await db.execute(select(SubscriptionState).where(SubscriptionState.user_id == user_id))
    return result.scalar_one_or_none()


async def resolve_plan(
    user_id: str,
    db: AsyncSession,
    *,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> ResolvedPlan:
    current = as_utc(now) or utcnow()
    if is_admin:
        resolved = resolve_from_records(is_admin=True, override=None, subscription=None, now=current)
    else:
        override = await load_live_override(user_id, db, current)
        subscription = None if override is not None else await load_subscription_state(user_id, db)
        resolved = resolve_from_records(
            is_admin=False,
            override=override,
            subscription=subscription,
            now=current,
        )
    logger.debug("plan_resolved user=%s plan=%s source=%s", user_id, resolved.plan, resolved.source)
    return resolved
