import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.subscription_state import SubscriptionState
from services.admin_allowlist import is_admin
from services.credits import apply_credits, consume, refill_monthly
from services.errors import ADMIN_ONLY, INVALID_REQUEST, CreditsFailure
from services.ledger import get_ledger_balance, recent_entries
from services.usage import get_usage
from services.wallet import get_wallet


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
USER_ID = "usage-user"


@pytest.mark.asyncio
async def test_usage_reads_zero_for_untouched_month(db):
    await apply_credits(USER_ID, db, amount=3, reason="promo", applied_by=USER_ID, now=NOW)
    await consume(USER_ID, db, action_type="CASE_CREATED", now=NOW)
    await consume(USER_ID, db, action_type="DRAFT_GENERATE", now=NOW)

    march = await get_usage(USER_ID, db, now=NOW)
    assert (march["ym"], march["cases_created"], march["credits_spent"]) == ("2026-03", 1, 1)

    april = await get_usage(USER_ID, db, now=datetime(2026, 4, 2, tzinfo=timezone.utc))
    assert april == {"ym": "2026-04", "cases_created": 0, "credits_spent": 0, "ai_sessions_started": 0}


@pytest.mark.asyncio
async def test_apply_credits_updates_balance_and_lifetime(db):
    result = await apply_credits(USER_ID, db, amount=25, reason="stripe_purchase", applied_by=USER_ID, now=NOW)

    assert result["new_balance"] == 25
    assert result["lifetime_credits"] == 25
    rows = (await db.execute(select(CreditLedger).where(CreditLedger.user_id == USER_ID))).scalars().all()
    assert [(row.action_type, row.delta, row.meta["reason"]) for row in rows] == [("REFILL", 25, "stripe_purchase")]
    assert await get_ledger_balance(USER_ID, db) == 25


@pytest.mark.asyncio
async def test_apply_credits_rejects_bad_requests(db):
    with pytest.raises(CreditsFailure) as excinfo:
        await apply_credits(USER_ID, db, amount=0, reason="promo", applied_by=USER_ID)
    assert excinfo.value.code == INVALID_REQUEST

    with pytest.raises(CreditsFailure) as excinfo:
        await apply_credits(USER_ID, db, amount=5, reason="gift", applied_by=USER_ID)
    assert excinfo.value.code == INVALID_REQUEST

    with pytest.raises(CreditsFailure) as excinfo:
        await apply_credits(USER_ID, db, amount=5, reason="admin_adjustment", applied_by=USER_ID)
    assert excinfo.value.code == ADMIN_ONLY

    with pytest.raises(CreditsFailure) as excinfo:
        await apply_credits("someone-else", db, amount=5, reason="promo", applied_by=USER_ID)
    assert excinfo.value.code == ADMIN_ONLY

    assert await get_wallet(USER_ID, db) is None


@pytest.mark.asyncio
async def test_admin_adjustment_is_logged_as_adjustment(db):
    result = await apply_credits(
        "someone-else",
        db,
        amount=7,
        reason="admin_adjustment",
        applied_by=USER_ID,
        caller_is_admin=True,
        now=NOW,
    )
    assert result["target_user_id"] == "someone-else"

    entries = await recent_entries("someone-else", db)
    assert entries[0]["action_type"] == "ADJUSTMENT"
    assert entries[0]["meta"]["applied_by"] == USER_ID


def test_admin_allowlist_matches_ids_and_emails_case_insensitively():
    with patch("services.admin_allowlist.settings.ADMIN_EMAILS", ["Owner@Lexora.test"]), patch(
        "services.admin_allowlist.settings.ADMIN_USER_IDS", ["admin-1"]
    ):
        assert is_admin("anyone", "owner@lexora.test") is True
        assert is_admin("admin-1", None) is True
        assert is_admin("anyone", "other@lexora.test") is False
        assert is_admin("", None) is False


@pytest.mark.asyncio
async def test_monthly_refill_runs_once_per_month(db):
    db.add_all(
        [
            SubscriptionState(user_id="paid-a", plan="starter", status="active", is_active=True, monthly_credit_refill=10),
            SubscriptionState(user_id="paid-b", plan="pro", status="active", is_active=True, monthly_credit_refill=40),
            SubscriptionState(user_id="lapsed", plan="plus", status="canceled", is_active=False, monthly_credit_refill=20),
            SubscriptionState(user_id="free", plan="free", status="active", is_active=True, monthly_credit_refill=0),
        ]
    )
    await db.commit()

    first = await refill_monthly(db, now=NOW)
    assert first == {"success": True, "ym": "2026-03", "users_refilled": 2, "total_credits_refilled": 50}

    again = await refill_monthly(db, now=NOW)
    assert again["users_refilled"] == 0
    assert (await get_wallet("paid-a", db)).balance_credits == 10

    april = await refill_monthly(db, now=datetime(2026, 4, 1, 0, 1, tzinfo=timezone.utc))
    assert april["users_refilled"] == 2
    wallet = await get_wallet("paid-b", db)
    assert (wallet.balance_credits, wallet.lifetime_credits) == (80, 80)


@pytest.mark.asyncio
async def test_recent_entries_hide_stored_results(db):
    await apply_credits(USER_ID, db, amount=2, reason="promo", applied_by=USER_ID, now=NOW)
    await consume(USER_ID, db, action_type="OCR_ANALYZE", idempotency_key="scan-1", now=NOW)

    entries = await recent_entries(USER_ID, db, limit=10)
    assert len(entries) == 2
    ocr = next(item for item in entries if item["action_type"] == "OCR_ANALYZE")
    assert ocr["delta"] == -1
    assert "result" not in ocr["meta"]
    assert ocr["meta"]["idempotency_key"] == "scan-1"


@pytest.mark.asyncio
async def test_overlapping_refill_runs_grant_once(session_maker):
    async with session_maker() as session:
        session.add(
            SubscriptionState(user_id="paid-c", plan="plus", status="active", is_active=True, monthly_credit_refill=15)
        )
        await session.commit()

    async def _run_on_worker():
        async with session_maker() as session:
            return await refill_monthly(session, now=NOW)

    # Each worker process has its own in-process lock table.
    with patch("services.credits.user_lock", side_effect=lambda _user_id: asyncio.Lock()):
        runs = await asyncio.gather(_run_on_worker(), _run_on_worker())

    assert sorted(run["users_refilled"] for run in runs) == [0, 1]
    async with session_maker() as session:
        wallet = await get_wallet("paid-c", session)
        assert (wallet.balance_credits, wallet.lifetime_credits) == (15, 15)
        assert await get_ledger_balance("paid-c", session) == 15


@pytest.mark.asyncio
async def test_refill_from_previous_month_does_not_block_current_month(db):
    db.add(SubscriptionState(user_id="paid-d", plan="starter", status="active", is_active=True, monthly_credit_refill=5))
    await db.commit()

    await refill_monthly(db, now=datetime(2026, 2, 28, 23, 59, tzinfo=timezone.utc))
    march = await refill_monthly(db, now=datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc))

    assert march["users_refilled"] == 1
    assert (await get_wallet("paid-d", db)).balance_credits == 10
