"""Identity collaborator: signed session tokens for API callers."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "lexora_session"


@dataclass(frozen=True)
class SessionIdentity:
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a bearer token for ``user_id``; returns the token and its expiry timestamp."""
    issued_at = datetime.now(timezone.utc)
    ttl = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + ttl).timestamp()),
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def read_session_identity(token: Optional[str]) -> SessionIdentity:
    """Verify ``token`` and return who it belongs to; raises ValueError when unusable."""
    if not token or not token.strip():
        raise ValueError("Missing session token.")
    try:
        claims = jwt.decode(token.strip(), settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(claims.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    return SessionIdentity(
        user_id=user_id,
        email=str(claims.get("email", "")).strip() or None,
        expires_at=claims.get("exp"),
    )


def authenticate(token: Optional[str]) -> str:
    """Return the user id behind ``token``."""
    return read_session_identity(token).user_id
