from datetime import datetime, timedelta, timezone

import pytest

from models.plan_override import PlanOverride
from models.subscription_state import SubscriptionState
from services.plan_resolver import resolve_plan
from services.plans import access_allowed, get_plan_limits, normalize_plan_key


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
USER_ID = "resolver-user"


async def _seed_override(db, *, plan_code="plus", is_active=True, expires_at=None):
    override = PlanOverride(user_id=USER_ID, plan_code=plan_code, is_active=is_active, expires_at=expires_at)
    db.add(override)
    await db.commit()
    return override


async def _seed_subscription(db, *, plan="pro", status="active"):
    state = SubscriptionState(user_id=USER_ID, plan=plan, status=status, is_active=True)
    db.add(state)
    await db.commit()
    return state


@pytest.mark.asyncio
async def test_priority_falls_through_admin_override_billing_default(db):
    override = await _seed_override(db, plan_code="plus")
    subscription = await _seed_subscription(db, plan="starter")

    resolved = await resolve_plan(USER_ID, db, is_admin=True, now=NOW)
    assert (resolved.plan, resolved.source) == ("unlimited", "admin")
    assert resolved.limits.max_cases is None

    resolved = await resolve_plan(USER_ID, db, is_admin=False, now=NOW)
    assert (resolved.plan, resolved.source) == ("plus", "override")

    override.is_active = False
    await db.commit()
    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert (resolved.plan, resolved.source) == ("starter", "billing")

    await db.delete(subscription)
    await db.commit()
    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert (resolved.plan, resolved.source) == ("free", "default")
    assert resolved.limits == get_plan_limits("free")


@pytest.mark.asyncio
async def test_expired_override_is_ignored(db):
    await _seed_override(db, plan_code="unlimited", expires_at=NOW - timedelta(minutes=1))
    await _seed_subscription(db, plan="plus")

    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert resolved.source == "billing"
    assert resolved.plan == "plus"


@pytest.mark.asyncio
async def test_future_expiry_override_applies(db):
    await _seed_override(db, plan_code="unlimited", expires_at=NOW + timedelta(days=3))

    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert resolved.source == "override"
    assert resolved.is_unlimited


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,expected_plan",
    [
        ("active", "pro"),
        ("trialing", "pro"),
        ("past_due", "pro"),
        ("unpaid", "free"),
        ("canceled", "free"),
    ],
)
async def test_billing_status_controls_paid_label(db, status, expected_plan):
    await _seed_subscription(db, plan="pro", status=status)

    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert resolved.plan == expected_plan


@pytest.mark.asyncio
async def test_free_subscription_row_resolves_to_default(db):
    await _seed_subscription(db, plan="free", status="active")

    resolved = await resolve_plan(USER_ID, db, now=NOW)
    assert (resolved.plan, resolved.source) == ("free", "default")


def test_past_due_keeps_label_but_loses_access():
    assert access_allowed("active")
    assert access_allowed("trialing")
    assert not access_allowed("past_due")
    assert not access_allowed(None)


def test_plan_key_normalisation_tolerates_legacy_names():
    assert normalize_plan_key("Basic") == "starter"
    assert normalize_plan_key("professional") == "plus"
    assert normalize_plan_key("unlimited") == "unlimited"
    assert normalize_plan_key("enterprise-legacy") == "free"
    assert normalize_plan_key(None) == "free"
