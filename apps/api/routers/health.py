"""
Health check endpoints.
"""

from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
import redis.asyncio as redis

from config import settings, validate_security_settings
from database import get_db
from models.ai_session import AISession
from models.credit_ledger import CreditLedger
from models.usage_counter import UsageCounter
from models.wallet import Wallet

router = APIRouter()

METERING_TABLES = (Wallet, CreditLedger, UsageCounter, AISession)


async def _metering_store_status(db: AsyncSession) -> Dict[str, str]:
    """Probe each metering table; a missing table means migrations have not run."""
    statuses: Dict[str, str] = {}
    for model in METERING_TABLES:
        try:
            await db.execute(select(func.count()).select_from(select(model).limit(1).subquery()))
            statuses[model.__tablename__] = "up"
        except SQLAlchemyError as exc:
            await db.rollback()
            statuses[model.__tablename__] = f"down: {exc.__class__.__name__}"
    return statuses


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    Reports the metering store (wallets, ledger, usage, sessions), the Redis
    rate-limit backend and whether billing sync is wired up.
    """
    store = await _metering_store_status(db)
    health_status = {
        "status": "healthy" if all(value == "up" for value in store.values()) else "degraded",
        "api": "up",
        "metering_store": store,
        "rate_limit_backend": "unknown",
        "billing_sync": "configured" if settings.BILLING_SYNC_URL else "disabled",
    }

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["rate_limit_backend"] = "redis"
    except (redis.RedisError, OSError):
        # Rate limits still apply through the in-process counters.
        health_status["rate_limit_backend"] = "local"

    return health_status


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Ready once secrets are safe and every metering table is reachable."""
    problems = []
    try:
        validate_security_settings()
    except ValueError as exc:
        problems.append(str(exc))
    for table, status in (await _metering_store_status(db)).items():
        if status != "up":
            problems.append(f"{table} {status}")

    if problems:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "problems": problems},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
