from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from annuaire_api.core.config import get_settings
from annuaire_api.core.periods import next_nightly_run
from annuaire_api.services.errors import ReconciliationAbortError, RepositoryValidationError
from annuaire_api.services.local_source import get_local_source
from annuaire_api.services.repository import get_repository
from annuaire_api.services.snapshot import build_entry

logger = logging.getLogger(__name__)

RUN_TRIGGERS = {"scheduled", "manual"}
# A "merged" enqueue leaves the queued work unchanged.
COUNTED_ENQUEUE_ACTIONS = {"created", "coalesced"}


@dataclass(slots=True)
class ScanCounts:
    scanned: int = 0
    divergent: int = 0
    enqueued: int = 0


class ReconciliationService:
    """Full diff of local state against what the directory was last sent.

    Runs are single-flight: `start_sync_run` flips the reconciliation lock
    from idle to running atomically, so an overlapping trigger returns None
    instead of starting a second scan.
    """

    def __init__(
        self,
        store: Any,
        source: Any,
        *,
        operator_id: str,
        stale_after_seconds: int,
        batch_size: int = 500,
        reconciliation_hour_utc: int = 2,
    ) -> None:
        self.store = store
        self.source = source
        self.operator_id = operator_id
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size
        self.reconciliation_hour_utc = reconciliation_hour_utc

    async def run(self, *, trigger: str = "scheduled", now: datetime | None = None) -> dict[str, Any] | None:
        if trigger not in RUN_TRIGGERS:
            raise RepositoryValidationError(f"unsupported trigger: {trigger}")
        run = await self.store.start_sync_run(
            trigger=trigger,
            stale_after_seconds=self.stale_after_seconds,
            now=now,
        )
        if run is None:
            logger.info("reconciliation already running; trigger=%s skipped", trigger)
            return None

        logger.info("reconciliation started run_id=%s trigger=%s", run["id"], trigger)
        counts = ScanCounts()
        try:
            await self._scan(counts, now=now)
        except ReconciliationAbortError as exc:
            logger.exception("reconciliation failed run_id=%s", run["id"])
            return await self.store.finish_sync_run(
                run["id"],
                status="failed",
                scanned_count=counts.scanned,
                divergent_count=counts.divergent,
                enqueued_count=counts.enqueued,
                error=str(exc),
                now=now,
            )

        finished = await self.store.finish_sync_run(
            run["id"],
            status="completed",
            scanned_count=counts.scanned,
            divergent_count=counts.divergent,
            enqueued_count=counts.enqueued,
            now=now,
        )
        logger.info(
            "reconciliation completed run_id=%s scanned=%s divergent=%s enqueued=%s",
            run["id"],
            counts.scanned,
            counts.divergent,
            counts.enqueued,
        )
        return finished

    async def _scan(self, counts: ScanCounts, *, now: datetime | None) -> None:
        try:
            published = {entry["entry_id"]: entry for entry in await self.store.list_published_entries()}
            seen: set[str] = set()

            async for record in self.source.iter_records(batch_size=self.batch_size):
                counts.scanned += 1
                entry = build_entry(record, operator_id=self.operator_id)
                seen.add(entry.entry_id)
                state = published.get(entry.entry_id)
                last_hash = state.get("last_published_hash") if state else None
                if last_hash == entry.content_hash:
                    continue
                counts.divergent += 1
                _, action = await self.store.enqueue_task(
                    entry_id=entry.entry_id,
                    entry_type=entry.entry_type,
                    entry_label=entry.label,
                    operation="update" if last_hash else "create",
                    now=now,
                )
                if action in COUNTED_ENQUEUE_ACTIONS:
                    counts.enqueued += 1

            for entry_id, state in published.items():
                if entry_id in seen:
                    continue
                # Published but gone locally.
                counts.divergent += 1
                _, action = await self.store.enqueue_task(
                    entry_id=entry_id,
                    entry_type=state["entry_type"],
                    entry_label=state.get("entry_label"),
                    operation="delete",
                    now=now,
                )
                if action in COUNTED_ENQUEUE_ACTIONS:
                    counts.enqueued += 1
        except Exception as exc:
            raise ReconciliationAbortError(f"{exc.__class__.__name__}: {exc}") from exc

    async def sync_status(self, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        latest = await self.store.list_sync_runs(limit=1)
        last_finished = await self.store.latest_finished_sync_run()
        synced_count = await self.store.count_published_entries()

        if latest and latest[0]["status"] == "running":
            status = "running"
        elif last_finished is not None:
            status = last_finished["status"]
        else:
            status = "idle"

        return {
            "last_sync": last_finished["finished_at"] if last_finished else None,
            "next_sync": next_nightly_run(current, hour_utc=self.reconciliation_hour_utc),
            "status": status,
            "synced_count": synced_count,
        }

    async def list_runs(self, *, limit: int) -> list[dict[str, Any]]:
        return await self.store.list_sync_runs(limit=limit)


def get_reconciliation_service() -> ReconciliationService:
    settings = get_settings()
    return ReconciliationService(
        get_repository(),
        get_local_source(),
        operator_id=settings.operator_id,
        stale_after_seconds=settings.scheduler_lock_stale_seconds,
        batch_size=settings.reconciliation_batch_size,
        reconciliation_hour_utc=settings.reconciliation_hour_utc,
    )
