"""Structured failures raised by the credit metering services."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException


NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
INVALID_ACTION = "INVALID_ACTION"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
CASE_LIMIT_REACHED = "CASE_LIMIT_REACHED"
INTERNAL_ERROR = "INTERNAL_ERROR"
ADMIN_ONLY = "ADMIN_ONLY"
INVALID_REQUEST = "INVALID_REQUEST"

_STATUS_BY_CODE = {
    NOT_AUTHENTICATED: 401,
    INVALID_ACTION: 400,
    INSUFFICIENT_CREDITS: 402,
    CASE_LIMIT_REACHED: 403,
    ADMIN_ONLY: 403,
    INVALID_REQUEST: 400,
    INTERNAL_ERROR: 500,
}


class CreditsFailure(HTTPException):
    """Business or infrastructure failure with a machine-readable ``code``.

    ``detail`` carries the code, a human message and the structured fields the
    client needs to render the outcome (balance, required amount, usage, limit).
    """

    def __init__(self, code: str, message: str, **details: Any) -> None:
        self.code = code
        self.details = details
        super().__init__(
            status_code=_STATUS_BY_CODE.get(code, 400),
            detail={"code": code, "error": message, **details},
        )


def insufficient_credits(current_balance: int, required: int) -> CreditsFailure:
    return CreditsFailure(
        INSUFFICIENT_CREDITS,
        f"Insufficient credits. Required: {required}, available: {current_balance}. Top up credits to continue.",
        current_balance=current_balance,
        required=required,
    )


def case_limit_reached(cases_used: int, cases_limit: int) -> CreditsFailure:
    return CreditsFailure(
        CASE_LIMIT_REACHED,
        "Monthly case limit reached. Upgrade your plan to continue.",
        cases_used=cases_used,
        cases_limit=cases_limit,
    )
