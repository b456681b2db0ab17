"""Billing collaborator: subscription snapshot reads and provider resync.

The subscription row itself is maintained by the billing webhook/sync service.
This module only reads it and, when a sync endpoint is configured, asks that
service to refresh the row from the provider before re-reading it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.subscription_state import SubscriptionState
from services.periods import isoformat_or_none
from services.plans import normalize_plan_key

logger = logging.getLogger(__name__)


class BillingSyncError(RuntimeError):
    """Raised when the billing sync service cannot be reached or rejects the call."""


def subscription_payload(user_id: str, state: Optional[SubscriptionState]) -> Dict[str, Any]:
    if state is None:
        return {
            "user_id": user_id,
            "plan": "free",
            "status": "active",
            "is_active": True,
            "monthly_case_limit": None,
            "monthly_credit_refill": 0,
            "period_end": None,
        }
    return {
        "user_id": user_id,
        "plan": normalize_plan_key(state.plan),
        "status": state.status,
        "is_active": bool(state.is_active),
        "monthly_case_limit": state.monthly_case_limit,
        "monthly_credit_refill": int(state.monthly_credit_refill or 0),
        "period_end": isoformat_or_none(state.period_end),
    }


async def get_subscription_state(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(SubscriptionState)
        .where(SubscriptionState.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return subscription_payload(user_id, result.scalar_one_or_none())


async def _request_provider_sync(user_id: str, access_token: Optional[str]) -> None:
    headers = {"Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    try:
        async with httpx.AsyncClient(timeout=settings.BILLING_SYNC_TIMEOUT_SECONDS) as client:
            response = await client.post(settings.BILLING_SYNC_URL, json={"user_id": user_id}, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise BillingSyncError(f"Billing sync failed for user {user_id}: {exc}") from exc


async def trigger_sync(user_id: str, db: AsyncSession, *, access_token: Optional[str] = None) -> Dict[str, Any]:
    """Refresh the subscription row from the provider (idempotent) and return it."""
    if settings.BILLING_SYNC_URL:
        await _request_provider_sync(user_id, access_token)
        logger.info("billing_sync_requested user=%s", user_id)
    else:
        logger.info("billing_sync_skipped user=%s reason=no_sync_url", user_id)
    # End the current snapshot so the re-read sees the collaborator's write.
    await db.rollback()
    payload = await get_subscription_state(user_id, db)
    return {**payload, "synced": bool(settings.BILLING_SYNC_URL)}
