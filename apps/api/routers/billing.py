"""Billing router: subscription snapshot and provider resync."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.billing_sync import BillingSyncError, get_subscription_state, trigger_sync

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/subscription")
async def subscription_state(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_subscription_state(auth.user_id, db)


@router.post("/sync")
async def sync_subscription(
    _rate_limit: None = Depends(rate_limit("billing_sync", limit=20, window_seconds=600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        state = await trigger_sync(auth.user_id, db, access_token=auth.token)
    except BillingSyncError as exc:
        logger.warning("billing_sync_failed user=%s: %s", auth.user_id, exc)
        raise HTTPException(status_code=502, detail={"code": "BILLING_SYNC_FAILED", "error": str(exc)}) from exc
    return {"ok": True, **state}
