"""Entitlements view consumed by the plan reconciliation monitor."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.entitlements import get_entitlements

router = APIRouter()


@router.get("")
async def entitlements(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Effective plan from the resolver (admin, override, billing, default)."""
    return await get_entitlements(auth.user_id, db, is_admin=auth.is_admin)
