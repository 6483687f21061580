from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from annuaire_workers.core.periods import nightly_slot, previous_period

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduleState:
    reconciliation_slot: datetime | None = None
    aggregated_period: str | None = None
    last_reap_at: float | None = None
    last_overdue_check_at: float | None = None


class Scheduler:
    """Decides which periodic engine actions are due on each poll cycle.

    Wall-clock time drives the calendar actions (nightly reconciliation,
    monthly aggregation); monotonic time drives the interval ones (stale
    claim recovery, overdue flagging). The engine API keeps every action
    single-flight, so several worker processes may run a scheduler.
    """

    def __init__(
        self,
        client: Any,
        *,
        reconciliation_hour_utc: int = 2,
        indicator_aggregation_day: int = 1,
        stale_reap_interval_seconds: float = 60.0,
        stale_reap_batch_size: int = 100,
        maintenance_interval_seconds: float = 300.0,
    ) -> None:
        self.client = client
        self.reconciliation_hour_utc = reconciliation_hour_utc
        self.indicator_aggregation_day = indicator_aggregation_day
        self.stale_reap_interval_seconds = stale_reap_interval_seconds
        self.stale_reap_batch_size = stale_reap_batch_size
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.state = ScheduleState()

    async def tick(self, *, now: datetime, monotonic_now: float) -> list[str]:
        performed: list[str] = []

        if _interval_due(self.state.last_reap_at, monotonic_now, self.stale_reap_interval_seconds):
            requeued = await self.client.reap_stale_tasks(limit=self.stale_reap_batch_size)
            if requeued:
                logger.info("requeued stale publication claims: %s", requeued)
            self.state.last_reap_at = monotonic_now
            performed.append("reap_stale")

        slot = nightly_slot(now, hour_utc=self.reconciliation_hour_utc)
        if self.state.reconciliation_slot is None:
            # No catch-up at startup; the first run is the next nightly slot.
            self.state.reconciliation_slot = slot
        elif slot > self.state.reconciliation_slot:
            result = await self.client.trigger_reconciliation()
            if result.get("started"):
                run = result.get("run") or {}
                logger.info(
                    "nightly reconciliation finished run_id=%s status=%s enqueued=%s",
                    run.get("id"),
                    run.get("status"),
                    run.get("enqueued_count"),
                )
            else:
                logger.info("nightly reconciliation skipped; a run is already in progress")
            self.state.reconciliation_slot = slot
            performed.append("reconcile")

        period = previous_period(now)
        if now.day >= self.indicator_aggregation_day and period != self.state.aggregated_period:
            aggregated = await self.client.aggregate_indicators(period)
            if aggregated is None:
                logger.info("indicator aggregation skipped period=%s (submitted or running)", period)
            else:
                logger.info("indicators aggregated period=%s deadline=%s", period, aggregated.get("deadline"))
            self.state.aggregated_period = period
            performed.append("aggregate_indicators")

        if _interval_due(self.state.last_overdue_check_at, monotonic_now, self.maintenance_interval_seconds):
            flagged = await self.client.flag_overdue_indicators()
            for overdue in flagged:
                logger.warning("indicator period overdue period=%s", overdue)
            self.state.last_overdue_check_at = monotonic_now
            performed.append("flag_overdue")

        return performed


def _interval_due(last_at: float | None, now: float, interval_seconds: float) -> bool:
    return last_at is None or now - last_at >= interval_seconds
