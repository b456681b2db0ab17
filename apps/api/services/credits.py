"""Consumption gateway: the single writer of wallets, usage, sessions and ledger.

Every chargeable action goes through :func:`consume`. Each call is one unit of
work serialized per user (in-process lock plus row locks on the wallet and
usage rows), so two concurrent requests can never both observe a sufficient
balance and both debit it. Failures roll the whole unit back.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.subscription_state import SubscriptionState
from services.errors import (
    ADMIN_ONLY,
    INTERNAL_ERROR,
    INVALID_ACTION,
    INVALID_REQUEST,
    CreditsFailure,
    case_limit_reached,
    insufficient_credits,
)
from services.idempotency import check_or_record
from services.ledger import append_entry, has_monthly_refill
from services.periods import as_utc, current_period_key, utcnow
from services.plan_resolver import ResolvedPlan, resolve_plan
from services.plans import (
    ADJUSTMENT,
    CREDIT_COSTS,
    REFILL,
    action_cost,
    action_family,
    is_valid_action,
)
from services.sessions import start_or_extend
from services.usage import lock_usage_counter
from services.wallet import credit, debit, lock_wallet

logger = logging.getLogger(__name__)

GRANT_REASONS = ("stripe_purchase", "admin_adjustment", "promo", "refund")

_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def user_lock(user_id: str) -> asyncio.Lock:
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


async def consume(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    case_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Authorize, price and record one user action exactly once.

    Returns the success payload. Raises :class:`CreditsFailure` with
    ``INVALID_ACTION``, ``CASE_LIMIT_REACHED``, ``INSUFFICIENT_CREDITS`` or
    ``INTERNAL_ERROR``; nothing is committed in those cases.
    """
    if not is_valid_action(action_type):
        raise CreditsFailure(
            INVALID_ACTION,
            "Invalid action type",
            action_type=action_type,
            valid_actions=sorted(CREDIT_COSTS),
        )

    current = as_utc(now) or utcnow()
    async with user_lock(user_id):
        try:
            result = await _consume_locked(
                user_id,
                db,
                action_type=action_type,
                case_id=case_id,
                meta=meta,
                idempotency_key=idempotency_key,
                is_admin=is_admin,
                now=current,
            )
            await db.commit()
        except CreditsFailure as failure:
            await db.rollback()
            logger.info("credits_consume_rejected user=%s action=%s code=%s", user_id, action_type, failure.code)
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("credits_consume_failed user=%s action=%s: %s", user_id, action_type, exc)
            raise CreditsFailure(INTERNAL_ERROR, "Temporary error. Please retry.") from exc
    return result


async def _consume_locked(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    case_id: Optional[str],
    meta: Optional[Dict[str, Any]],
    idempotency_key: Optional[str],
    is_admin: bool,
    now: datetime,
) -> Dict[str, Any]:
    # Key lookup runs under the wallet row lock so duplicates committed by
    # other workers are visible to it.
    wallet = await lock_wallet(user_id, db)
    check = await check_or_record(
        user_id,
        db,
        action_type=action_type,
        idempotency_key=idempotency_key,
        now=now,
        case_id=case_id if action_family(action_type) == "session" else None,
    )
    if check.replay:
        return check.prior_result or {}

    resolved = await resolve_plan(user_id, db, is_admin=is_admin, now=now)
    usage = await lock_usage_counter(user_id, db, now=now)
    cost = action_cost(action_type)
    family = action_family(action_type)
    period_key = current_period_key(now)

    result: Dict[str, Any] = {
        "success": True,
        "action_type": action_type,
        "plan": resolved.plan,
        "plan_source": resolved.source,
    }
    ledger_meta = {**(meta or {}), "ym": period_key, "plan": resolved.plan}

    if family == "quota":
        cases_limit = resolved.limits.max_cases
        cases_used = int(usage.cases_created or 0)
        if not resolved.is_unlimited and cases_limit is not None and cases_used >= cases_limit:
            raise case_limit_reached(cases_used, cases_limit)
        usage.cases_created = cases_used + 1
        entry = await append_entry(
            user_id,
            db,
            action_type=action_type,
            delta=0,
            case_id=case_id,
            idempotency_key=idempotency_key,
            meta=ledger_meta,
            now=now,
        )
        result.update(
            new_balance=int(wallet.balance_credits),
            credits_charged=0,
            cases_used=cases_used + 1,
            cases_limit=cases_limit,
        )
    elif family == "session" and case_id:
        outcome = await start_or_extend(
            user_id,
            db,
            case_id=case_id,
            nominal_cost=cost,
            resolved=resolved,
            wallet=wallet,
            usage=usage,
            now=now,
            idempotency_key=idempotency_key,
            meta=meta,
        )
        entry = outcome.ledger_entry
        result.update(
            new_balance=int(wallet.balance_credits),
            credits_charged=outcome.credits_charged,
            session=outcome.to_dict(),
        )
        if idempotency_key:
            # Extensions write no ledger row; the session row remembers the key instead.
            outcome.session.last_idempotency_key = idempotency_key
            outcome.session.last_result = result
    else:
        entry, charged = await _charge_flat(
            user_id,
            db,
            action_type=action_type,
            cost=cost,
            resolved=resolved,
            wallet=wallet,
            usage=usage,
            case_id=case_id,
            idempotency_key=idempotency_key,
            meta=ledger_meta,
            now=now,
        )
        result.update(new_balance=int(wallet.balance_credits), credits_charged=charged)

    if entry is not None:
        entry.meta = {**(entry.meta or {}), "result": result}
    await db.flush()
    logger.info(
        "credits_consume user=%s action=%s plan=%s source=%s charged=%s balance=%s",
        user_id,
        action_type,
        resolved.plan,
        resolved.source,
        result["credits_charged"],
        result["new_balance"],
    )
    return result


async def _charge_flat(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    cost: int,
    resolved: ResolvedPlan,
    wallet: Any,
    usage: Any,
    case_id: Optional[str],
    idempotency_key: Optional[str],
    meta: Dict[str, Any],
    now: datetime,
) -> Tuple[Any, int]:
    balance = int(wallet.balance_credits or 0)
    if not resolved.is_unlimited and balance < cost:
        raise insufficient_credits(balance, cost)

    charged = 0 if resolved.is_unlimited else cost
    if charged:
        debit(wallet, charged)
        usage.credits_spent = int(usage.credits_spent or 0) + charged
    entry = await append_entry(
        user_id,
        db,
        action_type=action_type,
        delta=-charged,
        case_id=case_id,
        idempotency_key=idempotency_key,
        meta={**meta, "nominal_cost": cost, "unlimited": resolved.is_unlimited},
        now=now,
    )
    return entry, charged


async def apply_credits(
    target_user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reason: str,
    applied_by: str,
    caller_is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant credits to a wallet (purchase, promo, refund or admin adjustment)."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise CreditsFailure(INVALID_REQUEST, "Invalid credits amount", credits_amount=amount)
    if reason not in GRANT_REASONS:
        raise CreditsFailure(INVALID_REQUEST, "Invalid reason", valid_reasons=list(GRANT_REASONS))
    if reason == "admin_adjustment" and not caller_is_admin:
        raise CreditsFailure(ADMIN_ONLY, "Admin adjustments require an administrator.")
    if target_user_id != applied_by and not caller_is_admin:
        raise CreditsFailure(ADMIN_ONLY, "Cannot apply credits for another user.")

    current = as_utc(now) or utcnow()
    action_type = ADJUSTMENT if reason == "admin_adjustment" else REFILL
    async with user_lock(target_user_id):
        try:
            wallet = await lock_wallet(target_user_id, db)
            credit(wallet, amount)
            await append_entry(
                target_user_id,
                db,
                action_type=action_type,
                delta=amount,
                meta={
                    "reason": reason,
                    "applied_by": applied_by,
                    "ym": current_period_key(current),
                },
                now=current,
            )
            new_balance = int(wallet.balance_credits)
            lifetime = int(wallet.lifetime_credits)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("credits_apply_failed target=%s reason=%s: %s", target_user_id, reason, exc)
            raise CreditsFailure(INTERNAL_ERROR, "Temporary error. Please retry.") from exc

    logger.info(
        "credits_applied target=%s amount=%s reason=%s by=%s balance=%s",
        target_user_id,
        amount,
        reason,
        applied_by,
        new_balance,
    )
    return {
        "success": True,
        "target_user_id": target_user_id,
        "credits_added": amount,
        "new_balance": new_balance,
        "lifetime_credits": lifetime,
    }


async def refill_monthly(db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Grant each active subscription its monthly refill, at most once per month."""
    current = as_utc(now) or utcnow()
    period_key = current_period_key(current)
    result = await db.execute(
        select(SubscriptionState.user_id, SubscriptionState.plan, SubscriptionState.monthly_credit_refill).where(
            SubscriptionState.is_active.is_(True),
            SubscriptionState.monthly_credit_refill > 0,
        )
    )
    targets = [(row.user_id, row.plan, int(row.monthly_credit_refill)) for row in result.all()]
    await db.rollback()

    refilled = 0
    total = 0
    errors: List[str] = []
    for user_id, plan, amount in targets:
        async with user_lock(user_id):
            try:
                wallet = await lock_wallet(user_id, db)
                if await has_monthly_refill(user_id, db, action_type=REFILL, now=current):
                    await db.rollback()
                    continue
                credit(wallet, amount)
                await append_entry(
                    user_id,
                    db,
                    action_type=REFILL,
                    delta=amount,
                    meta={"ym": period_key, "plan": plan, "reason": "monthly_refill"},
                    now=current,
                )
                await lock_usage_counter(user_id, db, now=current)
                await db.commit()
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.warning("credits_refill_failed user=%s: %s", user_id, exc)
                errors.append(f"User {user_id}: {exc}")
                continue
        refilled += 1
        total += amount

    logger.info("credits_refill_monthly ym=%s users=%s credits=%s errors=%s", period_key, refilled, total, len(errors))
    payload: Dict[str, Any] = {
        "success": True,
        "ym": period_key,
        "users_refilled": refilled,
        "total_credits_refilled": total,
    }
    if errors:
        payload["errors"] = errors
    return payload
