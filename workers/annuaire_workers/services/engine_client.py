from __future__ import annotations

from typing import Any

import httpx


class EngineClient:
    """Machine client for the sync engine API (task queue and scheduler endpoints)."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        scheduler_timeout_seconds: float = 900.0,
        api_key_header: str = "X-API-Key",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            api_key_header: api_key,
        }
        self.timeout_seconds = timeout_seconds
        # Reconciliation and aggregation run inside the request.
        self.scheduler_timeout_seconds = scheduler_timeout_seconds
        self.transport = transport

    def _client(self, timeout_seconds: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_seconds or self.timeout_seconds, transport=self.transport)

    async def get_tasks(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/tasks", params={"limit": limit}, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def claim_task(self, task_id: str) -> dict[str, Any] | None:
        """Claim a task; None when another consumer got there first."""
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/tasks/{task_id}/claim", headers=self.headers)
            if response.status_code in {404, 409}:
                return None
            response.raise_for_status()
            return response.json()

    async def submit_result(
        self,
        task_id: str,
        *,
        claim_id: str,
        version: int,
        outcome: str,
        error: str | None = None,
        content_hash: str | None = None,
    ) -> dict[str, Any]:
        payload = {
            "claim_id": claim_id,
            "version": version,
            "outcome": outcome,
            "error": error,
            "content_hash": content_hash,
        }
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/tasks/{task_id}/result", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def reap_stale_tasks(self, limit: int = 100) -> int:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/tasks/reap-stale",
                params={"limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            return int(response.json().get("requeued", 0))

    async def trigger_reconciliation(self) -> dict[str, Any]:
        async with self._client(self.scheduler_timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/scheduler/reconcile", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def aggregate_indicators(self, period: str) -> dict[str, Any] | None:
        """Aggregate a period; None when it is already submitted or being aggregated."""
        async with self._client(self.scheduler_timeout_seconds) as client:
            response = await client.post(
                f"{self.base_url}/scheduler/indicators/{period}/aggregate",
                headers=self.headers,
            )
            if response.status_code == 409:
                return None
            response.raise_for_status()
            return response.json()

    async def flag_overdue_indicators(self) -> list[str]:
        async with self._client(self.scheduler_timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/scheduler/indicators/flag-overdue", headers=self.headers)
            response.raise_for_status()
            return list(response.json().get("flagged", []))
