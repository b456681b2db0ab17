"""Credits router: consumption gateway, status snapshot and credit grants."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, auth_context_from_token, auth_scheme, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import apply_credits, consume, refill_monthly
from services.entitlements import get_credit_status
from services.errors import ADMIN_ONLY, CreditsFailure
from services.ledger import recent_entries

router = APIRouter()


class ConsumeRequest(BaseModel):
    action_type: str = Field(min_length=1, max_length=64)
    case_id: Optional[str] = Field(default=None, max_length=128)
    meta: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class ApplyCreditsRequest(BaseModel):
    credits_amount: int = Field(ge=1, le=100000)
    reason: str
    target_user_id: Optional[str] = None


@router.post("/consume")
async def consume_action(
    request: ConsumeRequest,
    _rate_limit: None = Depends(rate_limit("credits_consume", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await consume(
        auth.user_id,
        db,
        action_type=request.action_type,
        case_id=request.case_id,
        meta=request.meta,
        idempotency_key=request.idempotency_key,
        is_admin=auth.is_admin,
    )


@router.get("/status")
async def credits_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_status(auth.user_id, db)


@router.get("/ledger")
async def credits_ledger(
    limit: int = Query(default=settings.LEDGER_RECENT_LIMIT, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"user_id": auth.user_id, "entries": await recent_entries(auth.user_id, db, limit=limit)}


@router.post("/apply")
async def apply_credit_grant(
    request: ApplyCreditsRequest,
    _rate_limit: None = Depends(rate_limit("credits_apply", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await apply_credits(
        request.target_user_id or auth.user_id,
        db,
        amount=request.credits_amount,
        reason=request.reason,
        applied_by=auth.user_id,
        caller_is_admin=auth.is_admin,
    )


@router.post("/refill-monthly")
async def refill_monthly_credits(
    x_cron_secret: Optional[str] = Header(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: AsyncSession = Depends(get_db),
):
    """Monthly refill run; callable by the scheduler (cron secret) or an admin."""
    authorized = bool(settings.CRON_SECRET) and x_cron_secret == settings.CRON_SECRET
    if not authorized and credentials is not None:
        try:
            authorized = auth_context_from_token(credentials.credentials).is_admin
        except ValueError:
            authorized = False
    if not authorized:
        raise CreditsFailure(ADMIN_ONLY, "Monthly refill requires the cron secret or an administrator.")
    return await refill_monthly(db)
