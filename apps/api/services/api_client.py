"""Async HTTP client for the credits API, used by caller-side plan monitors."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from services.reconciliation import PlanStateMonitor


class CreditsApiError(RuntimeError):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(f"Credits API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class CreditsApiClient:
    """Thin wrapper over the credits endpoints for one authenticated user."""

    def __init__(
        self,
        base_url: str,
        session_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {session_token}"},
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "CreditsApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            raise CreditsApiError(response.status_code, detail)
        return response.json()

    async def status(self) -> Dict[str, Any]:
        return await self._request("GET", "/credits/status")

    async def entitlements(self) -> Dict[str, Any]:
        return await self._request("GET", "/entitlements")

    async def sync_billing(self) -> Dict[str, Any]:
        return await self._request("POST", "/billing/sync")

    async def consume(
        self,
        action_type: str,
        *,
        case_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action_type": action_type}
        if case_id:
            payload["case_id"] = case_id
        if meta:
            payload["meta"] = meta
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        return await self._request("POST", "/credits/consume", json=payload)

    def plan_monitor(self, user_id: str, *, debounce_seconds: Optional[float] = None) -> PlanStateMonitor:
        return PlanStateMonitor(
            user_id,
            fetch_status=self.status,
            fetch_entitlements=self.entitlements,
            sync_billing=self.sync_billing,
            debounce_seconds=debounce_seconds,
        )
