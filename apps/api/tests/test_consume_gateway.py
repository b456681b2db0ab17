import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.plan_override import PlanOverride
from models.subscription_state import SubscriptionState
from services.credits import apply_credits, consume
from services.errors import (
    CASE_LIMIT_REACHED,
    INSUFFICIENT_CREDITS,
    INTERNAL_ERROR,
    INVALID_ACTION,
    CreditsFailure,
)
from services.ledger import get_ledger_balance
from services.wallet import get_wallet


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
USER_ID = "gateway-user"


async def _grant(db, amount, user_id=USER_ID):
    return await apply_credits(user_id, db, amount=amount, reason="promo", applied_by=user_id, now=NOW)


async def _ledger_rows(db, action_type=None, user_id=USER_ID):
    query = select(CreditLedger).where(CreditLedger.user_id == user_id)
    if action_type:
        query = query.where(CreditLedger.action_type == action_type)
    result = await db.execute(query)
    return result.scalars().all()


@pytest.mark.asyncio
async def test_free_user_hits_monthly_case_limit(db):
    first = await consume(USER_ID, db, action_type="CASE_CREATED", case_id="case-1", now=NOW)
    assert first["success"] is True
    assert first["cases_used"] == 1
    assert first["cases_limit"] == 1
    assert first["credits_charged"] == 0

    with pytest.raises(CreditsFailure) as excinfo:
        await consume(USER_ID, db, action_type="CASE_CREATED", case_id="case-2", now=NOW)
    failure = excinfo.value
    assert failure.code == CASE_LIMIT_REACHED
    assert failure.status_code == 403
    assert failure.detail["cases_used"] == 1
    assert failure.detail["cases_limit"] == 1

    rows = await _ledger_rows(db, "CASE_CREATED")
    assert len(rows) == 1
    assert rows[0].delta == 0


@pytest.mark.asyncio
async def test_case_quota_resets_with_new_month(db):
    await consume(USER_ID, db, action_type="CASE_CREATED", now=NOW)
    next_month = datetime(2026, 4, 1, 0, 5, tzinfo=timezone.utc)

    result = await consume(USER_ID, db, action_type="CASE_CREATED", now=next_month)
    assert result["cases_used"] == 1


@pytest.mark.asyncio
async def test_flat_cost_debits_until_insufficient(db):
    await _grant(db, 1)

    result = await consume(USER_ID, db, action_type="DRAFT_GENERATE", now=NOW)
    assert result["new_balance"] == 0
    assert result["credits_charged"] == 1

    with pytest.raises(CreditsFailure) as excinfo:
        await consume(USER_ID, db, action_type="DRAFT_GENERATE", now=NOW)
    assert excinfo.value.code == INSUFFICIENT_CREDITS
    assert excinfo.value.status_code == 402
    assert excinfo.value.detail["current_balance"] == 0
    assert excinfo.value.detail["required"] == 1

    assert len(await _ledger_rows(db, "DRAFT_GENERATE")) == 1


@pytest.mark.asyncio
async def test_invalid_and_grant_only_actions_are_rejected(db):
    for action in ("NOT_AN_ACTION", "REFILL", "ADJUSTMENT", ""):
        with pytest.raises(CreditsFailure) as excinfo:
            await consume(USER_ID, db, action_type=action, now=NOW)
        assert excinfo.value.code == INVALID_ACTION
        assert "DRAFT_GENERATE" in excinfo.value.detail["valid_actions"]
    assert await _ledger_rows(db) == []


@pytest.mark.asyncio
async def test_idempotent_retry_returns_same_result_and_single_entry(db):
    await _grant(db, 5)

    first = await consume(USER_ID, db, action_type="OCR_ANALYZE", idempotency_key="req-1", now=NOW)
    retry = await consume(
        USER_ID,
        db,
        action_type="OCR_ANALYZE",
        idempotency_key="req-1",
        now=NOW + timedelta(seconds=5),
    )
    assert retry == first
    assert first["new_balance"] == 4

    rows = await _ledger_rows(db, "OCR_ANALYZE")
    assert len(rows) == 1
    assert rows[0].idempotency_key == "req-1"
    assert rows[0].meta["idempotency_key"] == "req-1"
    wallet = await get_wallet(USER_ID, db)
    assert wallet.balance_credits == 4


@pytest.mark.asyncio
async def test_idempotency_key_is_scoped_to_action_and_window(db):
    await _grant(db, 5)

    await consume(USER_ID, db, action_type="OCR_ANALYZE", idempotency_key="req-2", now=NOW)
    other_action = await consume(USER_ID, db, action_type="DRAFT_GENERATE", idempotency_key="req-2", now=NOW)
    assert other_action["new_balance"] == 3

    later = await consume(
        USER_ID,
        db,
        action_type="OCR_ANALYZE",
        idempotency_key="req-2",
        now=NOW + timedelta(seconds=61),
    )
    assert later["new_balance"] == 2
    assert len(await _ledger_rows(db, "OCR_ANALYZE")) == 2


@pytest.mark.asyncio
async def test_unlimited_plan_logs_zero_delta_with_nominal_cost(db):
    db.add(PlanOverride(user_id=USER_ID, plan_code="unlimited", is_active=True))
    await db.commit()

    result = await consume(USER_ID, db, action_type="DRAFT_REGENERATE", now=NOW)
    assert result["credits_charged"] == 0
    assert result["new_balance"] == 0
    assert result["plan_source"] == "override"

    entry = (await _ledger_rows(db, "DRAFT_REGENERATE"))[0]
    assert entry.delta == 0
    assert entry.meta["unlimited"] is True
    assert entry.meta["nominal_cost"] == 1

    for index in range(3):
        created = await consume(USER_ID, db, action_type="CASE_CREATED", case_id=f"case-{index}", now=NOW)
        assert created["cases_limit"] is None


@pytest.mark.asyncio
async def test_past_due_subscription_keeps_paid_case_limit(db):
    db.add(SubscriptionState(user_id=USER_ID, plan="starter", status="past_due", is_active=True))
    await db.commit()

    for _ in range(5):
        await consume(USER_ID, db, action_type="CASE_CREATED", now=NOW)
    with pytest.raises(CreditsFailure) as excinfo:
        await consume(USER_ID, db, action_type="CASE_CREATED", now=NOW)
    assert excinfo.value.detail["cases_limit"] == 5


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overspend(session_maker):
    async with session_maker() as session:
        await _grant(session, 3)

    async def _consume_once(index):
        async with session_maker() as session:
            return await consume(
                USER_ID,
                session,
                action_type="DRAFT_GENERATE",
                idempotency_key=f"tab-{index}",
                now=NOW,
            )

    outcomes = await asyncio.gather(*[_consume_once(index) for index in range(8)], return_exceptions=True)
    successes = [item for item in outcomes if isinstance(item, dict)]
    failures = [item for item in outcomes if isinstance(item, CreditsFailure)]
    assert len(successes) == 3
    assert len(failures) == 5
    assert all(failure.code == INSUFFICIENT_CREDITS for failure in failures)

    async with session_maker() as session:
        wallet = await get_wallet(USER_ID, session)
        assert wallet.balance_credits == 0
        assert await get_ledger_balance(USER_ID, session) == wallet.balance_credits
        debits = await session.execute(
            select(func.coalesce(func.sum(CreditLedger.delta), 0)).where(
                CreditLedger.user_id == USER_ID,
                CreditLedger.delta < 0,
            )
        )
        assert wallet.lifetime_credits + int(debits.scalar()) == wallet.balance_credits


@pytest.mark.asyncio
async def test_concurrent_duplicate_requests_apply_once(session_maker):
    async with session_maker() as session:
        await _grant(session, 10)

    async def _consume_duplicate():
        async with session_maker() as session:
            return await consume(USER_ID, session, action_type="OCR_ANALYZE", idempotency_key="dup", now=NOW)

    first, second = await asyncio.gather(_consume_duplicate(), _consume_duplicate())
    assert first == second

    async with session_maker() as session:
        assert len(await _ledger_rows(session, "OCR_ANALYZE")) == 1
        assert (await get_wallet(USER_ID, session)).balance_credits == 9


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_and_reports_internal_error(db):
    await _grant(db, 2)

    with patch("services.credits.lock_usage_counter", side_effect=OperationalError("UPDATE", {}, Exception("disk"))):
        with pytest.raises(CreditsFailure) as excinfo:
            await consume(USER_ID, db, action_type="DRAFT_GENERATE", now=NOW)
    assert excinfo.value.code == INTERNAL_ERROR
    assert excinfo.value.status_code == 500

    assert await _ledger_rows(db, "DRAFT_GENERATE") == []
    assert (await get_wallet(USER_ID, db)).balance_credits == 2


@pytest.mark.asyncio
async def test_duplicate_requests_on_separate_workers_apply_once(session_maker):
    async with session_maker() as session:
        await _grant(session, 10)

    async def _consume_on_worker():
        async with session_maker() as session:
            return await consume(USER_ID, session, action_type="OCR_ANALYZE", idempotency_key="dup", now=NOW)

    # Each worker process has its own in-process lock table.
    with patch("services.credits.user_lock", side_effect=lambda _user_id: asyncio.Lock()):
        first, second = await asyncio.gather(_consume_on_worker(), _consume_on_worker())

    assert first == second
    assert first["new_balance"] == 9
    async with session_maker() as session:
        rows = await _ledger_rows(session, "OCR_ANALYZE")
        assert [row.idempotency_key for row in rows] == ["dup"]
        assert (await get_wallet(USER_ID, session)).balance_credits == 9
