from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from typing import Any

from annuaire_api.services.local_source import InMemoryLocalSource
from annuaire_api.services.queue import NON_TERMINAL_STATUSES, RetryPolicy
from annuaire_api.services.reconciliation import ReconciliationService
from annuaire_api.services.snapshot import build_entry
from annuaire_api.services.store import InMemoryStatusStore

T0 = datetime(2025, 3, 14, 2, 0, tzinfo=timezone.utc)
POLICY = RetryPolicy(max_attempts=5, base_seconds=120, max_seconds=3600)
DOMAIN = {"domain_name": "hopital.mssante.fr", "organization_name": "Hopital", "status": "active"}


def _mailbox(entry_id: str, email: str, **overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "entry_id": entry_id,
        "entry_type": "mailbox",
        "email": email,
        "mailbox_type": "organizational",
        "status": "active",
        "service_name": "Accueil",
        "domain": dict(DOMAIN),
    }
    record.update(overrides)
    return record


class ExplodingSource(InMemoryLocalSource):
    async def iter_records(self, *, batch_size: int = 500) -> AsyncIterator[dict[str, Any]]:
        async for record in super().iter_records(batch_size=batch_size):
            yield record
        raise ConnectionError("local database went away")


def _service(store: InMemoryStatusStore, source: InMemoryLocalSource) -> ReconciliationService:
    return ReconciliationService(store, source, operator_id="OP-1", stale_after_seconds=3600)


def _active(store: InMemoryStatusStore) -> dict[str, dict[str, Any]]:
    return {task["entry_id"]: task for task in store.tasks.values() if task["status"] in NON_TERMINAL_STATUSES}


async def _publish(store: InMemoryStatusStore, entry_id: str, content_hash: str | None) -> None:
    task = await store.get_active_task(entry_id)
    claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
    await store.record_outcome(
        task["id"],
        claim_id=claimed["claim_id"],
        version=claimed["version"],
        outcome="ok",
        error=None,
        content_hash=content_hash,
        policy=POLICY,
        now=T0,
    )


def test_reconciliation_enqueues_creates_for_unpublished_entries() -> None:
    store = InMemoryStatusStore()
    source = InMemoryLocalSource(
        [
            _mailbox("mbx-1", "accueil@hopital.mssante.fr"),
            _mailbox("mbx-2", "secret@hopital.mssante.fr", hide_from_directory=True),
        ]
    )

    run = asyncio.run(_service(store, source).run(trigger="scheduled", now=T0))

    assert run["status"] == "completed"
    assert run["scanned_count"] == 1
    assert run["divergent_count"] == 1
    assert run["enqueued_count"] == 1
    active = _active(store)
    assert list(active) == ["mbx-1"]
    assert active["mbx-1"]["operation"] == "create"
    assert active["mbx-1"]["entry_label"] == "accueil@hopital.mssante.fr"


def test_reconciliation_is_idempotent() -> None:
    store = InMemoryStatusStore()
    source = InMemoryLocalSource([_mailbox("mbx-1", "a@hopital.mssante.fr"), _mailbox("mbx-2", "b@hopital.mssante.fr")])
    service = _service(store, source)

    async def run() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.run(trigger="scheduled", now=T0)
        second = await service.run(trigger="manual", now=T0 + timedelta(minutes=1))
        return first, second

    first, second = asyncio.run(run())
    assert len(store.tasks) == 2
    assert all(task["operation"] == "create" for task in store.tasks.values())
    assert all(task["version"] == 1 for task in store.tasks.values())
    assert first["enqueued_count"] == 2
    assert second["divergent_count"] == 2
    assert second["enqueued_count"] == 0


def test_reconciliation_leaves_in_flight_publication_alone() -> None:
    store = InMemoryStatusStore()
    record = _mailbox("mbx-1", "a@hopital.mssante.fr")
    service = _service(store, InMemoryLocalSource([record]))
    content_hash = build_entry(record, operator_id="OP-1").content_hash

    async def run() -> dict[str, Any]:
        await service.run(trigger="scheduled", now=T0)
        task = await store.get_active_task("mbx-1")
        now = T0
        for _ in range(2):
            claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
            retried = await store.record_outcome(
                task["id"],
                claim_id=claimed["claim_id"],
                version=claimed["version"],
                outcome="transient_error",
                error="directory returned 503",
                content_hash=None,
                policy=POLICY,
                now=now,
            )
            now = retried["next_attempt_at"]

        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
        rerun = await service.run(trigger="manual", now=now)
        assert rerun["enqueued_count"] == 0
        return await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="ok",
            error=None,
            content_hash=content_hash,
            policy=POLICY,
            now=now,
        )

    result = asyncio.run(run())
    assert result["status"] == "success"
    assert result["attempt_count"] == 3
    assert store.entries["mbx-1"]["last_published_hash"] == content_hash


def test_reconciliation_skips_up_to_date_entries_and_detects_divergence() -> None:
    store = InMemoryStatusStore()
    current = _mailbox("mbx-1", "a@hopital.mssante.fr")
    stale = _mailbox("mbx-2", "b@hopital.mssante.fr")
    source = InMemoryLocalSource([current, stale])
    service = _service(store, source)

    async def run() -> dict[str, Any]:
        await service.run(trigger="scheduled", now=T0)
        await _publish(store, "mbx-1", build_entry(current, operator_id="OP-1").content_hash)
        await _publish(store, "mbx-2", build_entry(stale, operator_id="OP-1").content_hash)
        source.put({**stale, "service_name": "Urgences"})
        return await service.run(trigger="scheduled", now=T0 + timedelta(days=1))

    run = asyncio.run(run())
    assert run["scanned_count"] == 2
    assert run["divergent_count"] == 1
    active = _active(store)
    assert list(active) == ["mbx-2"]
    assert active["mbx-2"]["operation"] == "update"


def test_reconciliation_detects_tombstones() -> None:
    store = InMemoryStatusStore()
    record = _mailbox("mbx-1", "a@hopital.mssante.fr")
    source = InMemoryLocalSource([record])
    service = _service(store, source)

    async def run() -> dict[str, Any]:
        await service.run(trigger="scheduled", now=T0)
        await _publish(store, "mbx-1", build_entry(record, operator_id="OP-1").content_hash)
        source.remove("mbx-1")
        return await service.run(trigger="scheduled", now=T0 + timedelta(days=1))

    run = asyncio.run(run())
    assert run["enqueued_count"] == 1
    active = _active(store)
    assert active["mbx-1"]["operation"] == "delete"
    assert active["mbx-1"]["entry_label"] == "a@hopital.mssante.fr"


def test_overlapping_trigger_is_a_noop() -> None:
    store = InMemoryStatusStore()
    service = _service(store, InMemoryLocalSource([_mailbox("mbx-1", "a@hopital.mssante.fr")]))

    async def run() -> Any:
        await store.start_sync_run(trigger="scheduled", stale_after_seconds=3600, now=T0)
        return await service.run(trigger="scheduled", now=T0 + timedelta(minutes=5))

    assert asyncio.run(run()) is None
    assert len(store.sync_runs) == 1
    assert store.tasks == {}


def test_failure_mid_stream_marks_run_failed_and_keeps_enqueues() -> None:
    store = InMemoryStatusStore()
    source = ExplodingSource([_mailbox("mbx-1", "a@hopital.mssante.fr")])

    run = asyncio.run(_service(store, source).run(trigger="scheduled", now=T0))

    assert run["status"] == "failed"
    assert "ConnectionError" in run["error"]
    assert run["enqueued_count"] == 1
    assert "mbx-1" in _active(store)
    assert store.locks["reconciliation"]["state"] == "idle"


def test_sync_status_summary() -> None:
    store = InMemoryStatusStore()
    service = _service(store, InMemoryLocalSource([_mailbox("mbx-1", "a@hopital.mssante.fr")]))

    async def run() -> tuple[dict[str, Any], dict[str, Any]]:
        before = await service.sync_status(now=T0)
        await service.run(trigger="scheduled", now=T0)
        await _publish(store, "mbx-1", "f" * 64)
        after = await service.sync_status(now=T0 + timedelta(hours=1))
        return before, after

    before, after = asyncio.run(run())
    assert before["status"] == "idle"
    assert before["last_sync"] is None
    assert before["next_sync"] == T0 + timedelta(days=1)
    assert after["status"] == "completed"
    assert after["last_sync"] == T0
    assert after["synced_count"] == 1
