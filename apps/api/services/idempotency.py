"""Idempotency guard for consumption calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.ledger import find_keyed_entry, window_start
from services.sessions import find_keyed_session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdempotencyCheck:
    replay: bool
    prior_result: Optional[Dict[str, Any]] = None


async def check_or_record(
    user_id: str,
    db: AsyncSession,
    *,
    action_type: str,
    idempotency_key: Optional[str],
    now: datetime,
    window_seconds: Optional[int] = None,
    case_id: Optional[str] = None,
) -> IdempotencyCheck:
    """Look for a prior call carrying the same key inside the trailing window.

    Ledger rows are searched first. Session extensions write no ledger row, so
    for session-scoped calls (``case_id`` given) the session row that last
    accepted the key is checked too. A hit means the action was already
    applied; the stored result is returned and no delta may be written. A miss
    lets the call proceed, and the row it writes carries the key.
    """
    if not idempotency_key:
        return IdempotencyCheck(replay=False)

    window = settings.IDEMPOTENCY_WINDOW_SECONDS if window_seconds is None else window_seconds
    since = window_start(now, window)
    entry = await find_keyed_entry(
        user_id,
        db,
        action_type=action_type,
        idempotency_key=idempotency_key,
        since=since,
    )
    if entry is not None:
        prior = (entry.meta or {}).get("result")
        if not isinstance(prior, dict):
            prior = {"success": True, "action_type": action_type, "credits_charged": -int(entry.delta or 0)}
        logger.info("credits_idempotent_replay user=%s action=%s key=%s", user_id, action_type, idempotency_key)
        return IdempotencyCheck(replay=True, prior_result=dict(prior))

    if case_id:
        session = await find_keyed_session(user_id, case_id, db, idempotency_key=idempotency_key, since=since)
        if session is not None and isinstance(session.last_result, dict):
            logger.info(
                "credits_idempotent_replay user=%s action=%s key=%s session=%s",
                user_id,
                action_type,
                idempotency_key,
                session.id,
            )
            return IdempotencyCheck(replay=True, prior_result=dict(session.last_result))

    return IdempotencyCheck(replay=False)
