from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from annuaire_workers.core.periods import nightly_slot, previous_period
from annuaire_workers.jobs.scheduler import Scheduler


class FakeEngineClient:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.aggregate_response: dict[str, Any] | None = {"deadline": "2025-04-10T00:00:00Z"}

    async def reap_stale_tasks(self, limit: int = 100) -> int:
        self.calls.append(("reap", limit))
        return 0

    async def trigger_reconciliation(self) -> dict[str, Any]:
        self.calls.append(("reconcile", None))
        return {"started": True, "run": {"id": "run-1", "status": "completed", "enqueued_count": 3}}

    async def aggregate_indicators(self, period: str) -> dict[str, Any] | None:
        self.calls.append(("aggregate", period))
        return self.aggregate_response

    async def flag_overdue_indicators(self) -> list[str]:
        self.calls.append(("flag_overdue", None))
        return []


def _names(calls: list[tuple[str, Any]]) -> list[str]:
    return [name for name, _ in calls]


def test_period_helpers() -> None:
    assert previous_period(datetime(2025, 1, 5, tzinfo=timezone.utc)) == "2024-12"
    assert previous_period(datetime(2025, 4, 1, 0, 30, tzinfo=timezone.utc)) == "2025-03"
    assert nightly_slot(datetime(2025, 4, 1, 1, 59, tzinfo=timezone.utc), hour_utc=2) == datetime(
        2025, 3, 31, 2, 0, tzinfo=timezone.utc
    )
    assert nightly_slot(datetime(2025, 4, 1, 2, 0, tzinfo=timezone.utc), hour_utc=2) == datetime(
        2025, 4, 1, 2, 0, tzinfo=timezone.utc
    )


def test_first_tick_does_not_catch_up_reconciliation() -> None:
    client = FakeEngineClient()
    scheduler = Scheduler(client)

    performed = asyncio.run(scheduler.tick(now=datetime(2025, 4, 1, 14, 0, tzinfo=timezone.utc), monotonic_now=0.0))

    assert performed == ["reap_stale", "aggregate_indicators", "flag_overdue"]
    assert ("aggregate", "2025-03") in client.calls
    assert "reconcile" not in _names(client.calls)


def test_reconciliation_runs_once_per_nightly_slot() -> None:
    client = FakeEngineClient()
    scheduler = Scheduler(client, stale_reap_interval_seconds=60, maintenance_interval_seconds=300)

    async def run() -> list[list[str]]:
        return [
            await scheduler.tick(now=datetime(2025, 4, 1, 23, 0, tzinfo=timezone.utc), monotonic_now=0.0),
            await scheduler.tick(now=datetime(2025, 4, 2, 1, 59, tzinfo=timezone.utc), monotonic_now=10.0),
            await scheduler.tick(now=datetime(2025, 4, 2, 2, 0, 5, tzinfo=timezone.utc), monotonic_now=70.0),
            await scheduler.tick(now=datetime(2025, 4, 2, 2, 5, tzinfo=timezone.utc), monotonic_now=80.0),
        ]

    first, before_slot, at_slot, after_slot = asyncio.run(run())

    assert "reconcile" not in first
    assert before_slot == []
    assert at_slot == ["reap_stale", "reconcile"]
    assert after_slot == []
    assert _names(client.calls).count("reconcile") == 1


def test_indicators_aggregated_once_per_period() -> None:
    client = FakeEngineClient()
    client.aggregate_response = None
    scheduler = Scheduler(client, indicator_aggregation_day=2)

    async def run() -> None:
        await scheduler.tick(now=datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc), monotonic_now=0.0)
        await scheduler.tick(now=datetime(2025, 5, 2, 12, 0, tzinfo=timezone.utc), monotonic_now=1.0)
        await scheduler.tick(now=datetime(2025, 5, 3, 12, 0, tzinfo=timezone.utc), monotonic_now=2.0)
        await scheduler.tick(now=datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc), monotonic_now=3.0)

    asyncio.run(run())

    aggregated = [period for name, period in client.calls if name == "aggregate"]
    assert aggregated == ["2025-04", "2025-05"]
