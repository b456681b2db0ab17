"""Authentication dependencies: who is calling and whether they are an admin."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.admin_allowlist import is_admin
from services.errors import NOT_AUTHENTICATED, CreditsFailure
from services.session_token import read_session_identity


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    token: Optional[str] = None
    is_admin: bool = False


def auth_context_from_token(token: Optional[str]) -> AuthContext:
    """Raises ValueError for missing, forged or expired tokens."""
    identity = read_session_identity(token)
    return AuthContext(
        user_id=identity.user_id,
        email=identity.email,
        token=token,
        is_admin=is_admin(identity.user_id, identity.email),
    )


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated caller from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise CreditsFailure(NOT_AUTHENTICATED, "Missing Bearer session token.")
    try:
        return auth_context_from_token(credentials.credentials)
    except ValueError as exc:
        raise CreditsFailure(NOT_AUTHENTICATED, str(exc)) from exc
