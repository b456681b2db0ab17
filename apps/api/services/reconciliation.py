"""Plan reconciliation monitor.

Two independently computed views say whether a user is paid: the credit
status view (billing snapshot) and the entitlements view (plan resolver).
They can disagree transiently, e.g. right after checkout or when an admin
override is active. The monitor compares only their paid/free projection,
forces one debounced billing resync on disagreement, re-fetches both views
and stays not-ready until the views agree or that resync has completed, so a
paid user is never shown a free state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from config import settings
from services.plans import get_plan_limits, is_paid_plan, is_unlimited_plan, normalize_plan_key

logger = logging.getLogger(__name__)

ViewFetcher = Callable[[], Awaitable[Mapping[str, Any]]]
SyncCallable = Callable[[], Awaitable[Any]]


def view_is_paid(view: Optional[Mapping[str, Any]]) -> bool:
    return is_paid_plan((view or {}).get("plan"))


def detect_mismatch(view_a: Optional[Mapping[str, Any]], view_b: Optional[Mapping[str, Any]]) -> bool:
    """True when the two views disagree on paid vs free; plan names may differ."""
    return view_is_paid(view_a) != view_is_paid(view_b)


def canonical_plan_state(status: Mapping[str, Any], entitlements: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge both views; a paid plan from either source always wins over free."""
    status_plan = normalize_plan_key(status.get("plan"))
    entitlements_plan = normalize_plan_key(entitlements.get("plan"))
    if is_paid_plan(status_plan):
        plan = status_plan
    elif is_paid_plan(entitlements_plan):
        plan = entitlements_plan
    else:
        plan = status_plan

    limits = get_plan_limits(plan)
    monthly_case_limit = status.get("monthly_case_limit")
    if is_paid_plan(plan) and (monthly_case_limit is None or monthly_case_limit <= 1):
        monthly_case_limit = limits.max_cases
    if is_unlimited_plan(plan):
        monthly_case_limit = None

    cases_used = int(status.get("cases_used_this_month") or 0)
    cases_remaining = None if monthly_case_limit is None else max(0, int(monthly_case_limit) - cases_used)
    return {
        "plan": plan,
        "is_active": bool(status.get("is_active", True)),
        "monthly_case_limit": monthly_case_limit,
        "cases_used_this_month": cases_used,
        "cases_remaining": cases_remaining,
        "at_case_limit": cases_remaining is not None and cases_remaining <= 0,
        "messages_per_session": limits.messages_per_session,
        "period_end": status.get("period_end"),
        "credits_balance": int(status.get("credits_balance") or 0),
    }


class PlanStateMonitor:
    """Caller-side watchdog over the status and entitlements views of one user."""

    def __init__(
        self,
        user_id: str,
        *,
        fetch_status: ViewFetcher,
        fetch_entitlements: ViewFetcher,
        sync_billing: SyncCallable,
        debounce_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self._fetch_status = fetch_status
        self._fetch_entitlements = fetch_entitlements
        self._sync_billing = sync_billing
        self._debounce_seconds = float(
            settings.RECONCILE_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._clock = clock
        self._last_sync_at: Optional[float] = None
        self._sync_lock = asyncio.Lock()

        self.status: Optional[Dict[str, Any]] = None
        self.entitlements: Optional[Dict[str, Any]] = None
        self.is_loading = False
        self.is_syncing = False
        self.forced_sync_done = False
        self.error: Optional[str] = None

    @property
    def has_mismatch(self) -> bool:
        if self.status is None or self.entitlements is None:
            return False
        return detect_mismatch(self.status, self.entitlements)

    @property
    def is_ready(self) -> bool:
        if self.is_loading or self.is_syncing:
            return False
        if self.status is None or self.entitlements is None:
            return False
        return self.forced_sync_done or not self.has_mismatch

    @property
    def plan_state(self) -> Optional[Dict[str, Any]]:
        if not self.is_ready:
            return None
        return canonical_plan_state(self.status or {}, self.entitlements or {})

    @property
    def is_paid(self) -> bool:
        state = self.plan_state
        return bool(state) and is_paid_plan(state["plan"])

    async def _load_views(self) -> None:
        status, entitlements = await asyncio.gather(self._fetch_status(), self._fetch_entitlements())
        self.status = dict(status)
        self.entitlements = dict(entitlements)

    async def refresh(self) -> bool:
        """Load both views, resync once on mismatch, and return readiness."""
        self.is_loading = True
        try:
            await self._load_views()
        finally:
            self.is_loading = False

        if self.has_mismatch and not self.forced_sync_done:
            logger.warning(
                "plan_state_mismatch user=%s status_plan=%s entitlements_plan=%s",
                self.user_id,
                (self.status or {}).get("plan"),
                (self.entitlements or {}).get("plan"),
            )
            await self.force_resync()
        return self.is_ready

    async def trigger_sync(self) -> bool:
        """Explicit user-requested resync; bypasses the debounce, not the re-entry guard."""
        return await self.force_resync(force=True)

    async def force_resync(self, *, force: bool = False) -> bool:
        """Run the billing sync once and re-fetch both views.

        Debounced per user and guarded against concurrent re-entry; returns
        False when the call was skipped.
        """
        now = self._clock()
        if (
            not force
            and self._last_sync_at is not None
            and now - self._last_sync_at < self._debounce_seconds
        ):
            logger.debug("plan_state_sync_debounced user=%s", self.user_id)
            return False
        if self._sync_lock.locked():
            logger.debug("plan_state_sync_in_flight user=%s", self.user_id)
            return False

        async with self._sync_lock:
            self._last_sync_at = now
            self.is_syncing = True
            try:
                try:
                    await self._sync_billing()
                except Exception as exc:
                    self.error = str(exc)
                    logger.warning("plan_state_sync_failed user=%s: %s", self.user_id, exc)
                self.is_loading = True
                try:
                    await self._load_views()
                finally:
                    self.is_loading = False
            finally:
                self.forced_sync_done = True
                self.is_syncing = False

        if self.has_mismatch:
            logger.warning("plan_state_mismatch_unresolved user=%s", self.user_id)
        return True
