"""Plan catalogue and action cost table.

Single source of truth for plan limits and per-action credit costs. Every
other module reads limits through :func:`get_plan_limits` so plan naming skew
(legacy ``basic``/``professional`` labels) is normalised in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Literal, Optional


PlanKey = Literal["free", "starter", "plus", "pro", "unlimited"]
ActionFamily = Literal["quota", "session", "flat"]

FREE_PLAN: PlanKey = "free"
UNLIMITED_PLAN: PlanKey = "unlimited"

CASE_CREATED = "CASE_CREATED"
OCR_ANALYZE = "OCR_ANALYZE"
DRAFT_GENERATE = "DRAFT_GENERATE"
DRAFT_REGENERATE = "DRAFT_REGENERATE"
AI_SESSION_START = "AI_SESSION_START"
DOC_ANALYZE_EXTRA = "DOC_ANALYZE_EXTRA"
REFILL = "REFILL"
ADJUSTMENT = "ADJUSTMENT"

# Consumable actions only; REFILL/ADJUSTMENT are written by credit grants.
CREDIT_COSTS: Dict[str, int] = {
    CASE_CREATED: 0,
    OCR_ANALYZE: 1,
    DRAFT_GENERATE: 1,
    DRAFT_REGENERATE: 1,
    AI_SESSION_START: 1,
    DOC_ANALYZE_EXTRA: 1,
}

ACTION_FAMILIES: Dict[str, ActionFamily] = {
    CASE_CREATED: "quota",
    AI_SESSION_START: "session",
    OCR_ANALYZE: "flat",
    DRAFT_GENERATE: "flat",
    DRAFT_REGENERATE: "flat",
    DOC_ANALYZE_EXTRA: "flat",
}

# Billing statuses that still carry the paid plan label.
PAID_LABEL_STATUSES = frozenset({"active", "trialing", "past_due"})
# Billing statuses under which usage is allowed by the access gate.
ACCESS_ALLOWED_STATUSES = frozenset({"active", "trialing"})

_PLAN_ALIASES: Dict[str, PlanKey] = {
    "basic": "starter",
    "professional": "plus",
}


@dataclass(frozen=True)
class PlanLimits:
    max_cases: Optional[int]
    messages_per_session: Optional[int]
    credit_costs: Dict[str, int] = field(default_factory=lambda: dict(CREDIT_COSTS))


PLAN_LIMITS: Dict[PlanKey, PlanLimits] = {
    "free": PlanLimits(max_cases=1, messages_per_session=10),
    "starter": PlanLimits(max_cases=5, messages_per_session=15),
    "plus": PlanLimits(max_cases=20, messages_per_session=20),
    "pro": PlanLimits(max_cases=None, messages_per_session=30),
    "unlimited": PlanLimits(max_cases=None, messages_per_session=None),
}


def normalize_plan_key(plan: Optional[str]) -> PlanKey:
    """Map any stored plan label onto a known plan key; unknown labels are free."""
    if not plan or not isinstance(plan, str):
        return FREE_PLAN
    lowered = plan.strip().lower()
    if lowered in _PLAN_ALIASES:
        return _PLAN_ALIASES[lowered]
    if lowered in PLAN_LIMITS:
        return lowered  # type: ignore[return-value]
    return FREE_PLAN


def get_plan_limits(plan: Optional[str]) -> PlanLimits:
    return PLAN_LIMITS[normalize_plan_key(plan)]


def is_paid_plan(plan: Optional[str]) -> bool:
    return normalize_plan_key(plan) != FREE_PLAN


def is_unlimited_plan(plan: Optional[str]) -> bool:
    return normalize_plan_key(plan) == UNLIMITED_PLAN


def is_valid_action(action_type: Optional[str]) -> bool:
    return bool(action_type) and action_type in CREDIT_COSTS


def action_cost(action_type: str) -> int:
    return max(int(CREDIT_COSTS[action_type]), 0)


def action_family(action_type: str) -> ActionFamily:
    return ACTION_FAMILIES[action_type]


def subscription_carries_paid_label(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in PAID_LABEL_STATUSES


def access_allowed(status: Optional[str]) -> bool:
    """Access gate check, independent of the plan label (past_due keeps the label, loses access)."""
    return (status or "").strip().lower() in ACCESS_ALLOWED_STATUSES
