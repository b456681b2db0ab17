"""AI session manager.

A session groups a burst of chat interaction on one case so it is charged
once. States: none -> active (charged), active -> active (extend, free),
active -> expired (lazy, on next lookup once the time box or message cap is
exhausted) after which a new charged session starts. Expired rows are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.ai_session import AISession
from models.credit_ledger import CreditLedger
from models.usage_counter import UsageCounter
from models.wallet import Wallet
from services.errors import insufficient_credits
from services.ledger import append_entry
from services.periods import as_utc, current_period_key, isoformat_or_none
from services.plan_resolver import ResolvedPlan
from services.plans import AI_SESSION_START
from services.wallet import debit

logger = logging.getLogger(__name__)


@dataclass
class SessionOutcome:
    session: AISession
    charged: bool
    credits_charged: int
    ledger_entry: Optional[CreditLedger] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session.id,
            "charged": self.charged,
            "message_count": int(self.session.message_count),
            "max_messages": int(self.session.max_messages),
            "expires_at": isoformat_or_none(self.session.expires_at),
        }


def session_cap(resolved: ResolvedPlan) -> int:
    cap = resolved.limits.messages_per_session
    return int(cap) if cap else max(int(settings.SESSION_MAX_MESSAGES), 1)


def session_is_live(session: AISession, now: datetime) -> bool:
    expires_at = as_utc(session.expires_at)
    return bool(session.is_active) and now < expires_at and session.message_count < session.max_messages


async def find_active_session(user_id: str, case_id: str, db: AsyncSession) -> Optional[AISession]:
    result = await db.execute(
        select(AISession)
        .where(
            AISession.user_id == user_id,
            AISession.case_id == case_id,
            AISession.is_active.is_(True),
        )
        .order_by(AISession.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_keyed_session(
    user_id: str,
    case_id: str,
    db: AsyncSession,
    *,
    idempotency_key: str,
    since: datetime,
) -> Optional[AISession]:
    result = await db.execute(
        select(AISession)
        .where(
            AISession.user_id == user_id,
            AISession.case_id == case_id,
            AISession.last_idempotency_key == idempotency_key,
            AISession.last_message_at >= since,
        )
        .order_by(AISession.last_message_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def start_or_extend(
    user_id: str,
    db: AsyncSession,
    *,
    case_id: str,
    nominal_cost: int,
    resolved: ResolvedPlan,
    wallet: Wallet,
    usage: UsageCounter,
    now: datetime,
    idempotency_key: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> SessionOutcome:
    """Extend the live session for (user, case) or start a new, charged one.

    Must run inside the caller's locked unit of work: it mutates the wallet,
    usage counter and session rows without committing.
    """
    current = await find_active_session(user_id, case_id, db)
    if current is not None and session_is_live(current, now):
        current.message_count = int(current.message_count) + 1
        current.last_message_at = now
        await db.flush()
        logger.info(
            "ai_session_extended user=%s case=%s session=%s messages=%s/%s",
            user_id,
            case_id,
            current.id,
            current.message_count,
            current.max_messages,
        )
        return SessionOutcome(session=current, charged=False, credits_charged=0)

    if current is not None:
        current.is_active = False

    balance = int(wallet.balance_credits or 0)
    if not resolved.is_unlimited and balance < nominal_cost:
        raise insufficient_credits(balance, nominal_cost)

    session = AISession(
        id=str(uuid.uuid4()),
        user_id=user_id,
        case_id=case_id,
        ym=current_period_key(now),
        started_at=now,
        last_message_at=now,
        message_count=1,
        max_messages=session_cap(resolved),
        expires_at=now + timedelta(hours=max(int(settings.SESSION_DURATION_HOURS), 1)),
        is_active=True,
    )
    db.add(session)

    charged = 0 if resolved.is_unlimited else nominal_cost
    if charged:
        debit(wallet, charged)
        usage.credits_spent = int(usage.credits_spent or 0) + charged
    usage.ai_sessions_started = int(usage.ai_sessions_started or 0) + 1

    entry = await append_entry(
        user_id,
        db,
        action_type=AI_SESSION_START,
        delta=-charged,
        case_id=case_id,
        idempotency_key=idempotency_key,
        meta={
            **(meta or {}),
            "ym": current_period_key(now),
            "plan": resolved.plan,
            "session_id": session.id,
            "nominal_cost": nominal_cost,
            "unlimited": resolved.is_unlimited,
        },
        now=now,
    )
    logger.info(
        "ai_session_started user=%s case=%s session=%s charged=%s unlimited=%s",
        user_id,
        case_id,
        session.id,
        charged,
        resolved.is_unlimited,
    )
    return SessionOutcome(session=session, charged=True, credits_charged=charged, ledger_entry=entry)
