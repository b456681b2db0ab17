"""Administrator allowlist collaborator."""

from __future__ import annotations

from typing import Optional

from config import settings


def is_admin(user_id: Optional[str], email: Optional[str] = None) -> bool:
    """Return True when the identity is in the configured admin set."""
    admin_ids = {str(value).strip() for value in settings.ADMIN_USER_IDS if str(value).strip()}
    if user_id and str(user_id).strip() in admin_ids:
        return True
    if not email:
        return False
    lowered = email.strip().lower()
    return any(lowered == str(value).strip().lower() for value in settings.ADMIN_EMAILS)
