from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from annuaire_api.services.queue import NON_TERMINAL_STATUSES, RetryPolicy
from annuaire_api.services.store import InMemoryStatusStore

T0 = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)
POLICY = RetryPolicy(max_attempts=5, base_seconds=120, max_seconds=3600)
H1 = "1" * 64


def _active_tasks(store: InMemoryStatusStore, entry_id: str) -> list[dict]:
    return [
        task
        for task in store.tasks.values()
        if task["entry_id"] == entry_id and task["status"] in NON_TERMINAL_STATUSES
    ]


def test_enqueue_keeps_one_active_task_per_entry() -> None:
    async def run() -> InMemoryStatusStore:
        store = InMemoryStatusStore()
        first, action = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="a@x.fr", operation="update", now=T0
        )
        assert action == "created"
        second, action = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="a@x.fr", operation="delete", now=T0
        )
        assert action == "coalesced"
        assert second["id"] == first["id"]
        assert second["operation"] == "delete"
        assert second["version"] == first["version"] + 1
        return store

    store = asyncio.run(run())
    assert len(_active_tasks(store, "mbx-1")) == 1


def test_concurrent_enqueues_coalesce() -> None:
    async def run() -> InMemoryStatusStore:
        store = InMemoryStatusStore()
        await asyncio.gather(
            *(
                store.enqueue_task(
                    entry_id="mbx-1",
                    entry_type="mailbox",
                    entry_label=None,
                    operation=operation,
                    now=T0,
                )
                for operation in ("create", "update", "update", "update")
            )
        )
        return store

    store = asyncio.run(run())
    active = _active_tasks(store, "mbx-1")
    assert len(active) == 1
    assert active[0]["operation"] == "create"
    assert active[0]["version"] == 1


def test_enqueue_rejects_unknown_operation() -> None:
    store = InMemoryStatusStore()
    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            store.enqueue_task(entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="purge", now=T0)
        )


def test_dequeue_is_fifo_and_skips_waiting_retries() -> None:
    async def run() -> tuple[list[str], list[str]]:
        store = InMemoryStatusStore()
        for index in range(3):
            await store.enqueue_task(
                entry_id=f"mbx-{index}",
                entry_type="mailbox",
                entry_label=None,
                operation="create",
                now=T0 + timedelta(seconds=index),
            )
        head = await store.dequeue(now=T0 + timedelta(seconds=10))
        claimed = await store.mark_in_progress(head["id"], claimed_by="worker-a", now=T0 + timedelta(seconds=10))
        await store.record_outcome(
            claimed["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="transient_error",
            error="timeout",
            content_hash=None,
            policy=POLICY,
            now=T0 + timedelta(seconds=10),
        )
        soon = await store.list_eligible_tasks(limit=10, now=T0 + timedelta(seconds=20))
        later = await store.list_eligible_tasks(limit=10, now=T0 + timedelta(seconds=200))
        return [task["entry_id"] for task in soon], [task["entry_id"] for task in later]

    soon, later = asyncio.run(run())
    assert soon == ["mbx-1", "mbx-2"]
    assert later == ["mbx-0", "mbx-1", "mbx-2"]


def test_claim_is_exclusive() -> None:
    async def run() -> None:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="create", now=T0
        )
        await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        with pytest.raises(RepositoryConflictError):
            await store.mark_in_progress(task["id"], claimed_by="worker-b", now=T0)
        with pytest.raises(RepositoryNotFoundError):
            await store.mark_in_progress("missing", claimed_by="worker-b", now=T0)

    asyncio.run(run())


def test_three_transient_failures_then_success() -> None:
    async def run() -> tuple[InMemoryStatusStore, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="a@x.fr", operation="create", now=T0
        )
        now = T0
        for _ in range(3):
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
            assert retried["status"] == "retry_scheduled"
            assert retried["next_attempt_at"] > now
            now = retried["next_attempt_at"]

        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
        final = await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="ok",
            error=None,
            content_hash=H1,
            policy=POLICY,
            now=now,
        )
        return store, final

    store, final = asyncio.run(run())
    assert final["status"] == "success"
    assert final["attempt_count"] == 4
    assert final["last_error"] is None
    assert store.entries["mbx-1"]["last_published_hash"] == H1

    history = asyncio.run(store.list_history(limit=10))
    assert [record["status"] for record in history] == ["success", "retry_scheduled", "retry_scheduled", "retry_scheduled"]
    assert [record["attempt_count"] for record in history] == [4, 3, 2, 1]


def test_attempt_count_is_monotonic_and_capped() -> None:
    policy = RetryPolicy(max_attempts=3, base_seconds=60, max_seconds=600)

    async def run() -> list[dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="update", now=T0
        )
        now = T0
        snapshots = []
        for _ in range(3):
            claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
            result = await store.record_outcome(
                task["id"],
                claim_id=claimed["claim_id"],
                version=claimed["version"],
                outcome="transient_error",
                error="timeout",
                content_hash=None,
                policy=policy,
                now=now,
            )
            snapshots.append(result)
            now = result["next_attempt_at"] or now
        return snapshots

    snapshots = asyncio.run(run())
    assert [snapshot["attempt_count"] for snapshot in snapshots] == [1, 2, 3]
    assert [snapshot["status"] for snapshot in snapshots] == ["retry_scheduled", "retry_scheduled", "error"]
    assert snapshots[-1]["next_attempt_at"] is None


def test_superseded_result_is_discarded() -> None:
    async def run() -> tuple[InMemoryStatusStore, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="update", now=T0
        )
        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        coalesced, action = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="delete", now=T0
        )
        assert action == "coalesced"
        assert coalesced["status"] == "in_progress"
        result = await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="ok",
            error=None,
            content_hash=H1,
            policy=POLICY,
            now=T0,
        )
        return store, result

    store, result = asyncio.run(run())
    assert result["status"] == "pending"
    assert result["operation"] == "delete"
    assert result["attempt_count"] == 0
    assert result["last_error"] == "superseded"
    assert "mbx-1" not in store.entries
    assert store.history[-1]["status"] == "pending"
    assert store.history[-1]["error"] == "superseded"


def test_enqueue_without_operation_change_keeps_version() -> None:
    async def run() -> tuple[dict, str, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="a@x.fr", operation="update", now=T0
        )
        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        merged, action = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="b@x.fr", operation="update", now=T0
        )
        result = await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="ok",
            error=None,
            content_hash=H1,
            policy=POLICY,
            now=T0,
        )
        return merged, action, result

    merged, action, result = asyncio.run(run())
    assert action == "merged"
    assert merged["version"] == 1
    assert merged["entry_label"] == "b@x.fr"
    assert result["status"] == "success"


def test_superseded_result_keeps_attempt_budget() -> None:
    async def run() -> dict:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="update", now=T0
        )
        now = T0
        for _ in range(2):
            claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
            retried = await store.record_outcome(
                task["id"],
                claim_id=claimed["claim_id"],
                version=claimed["version"],
                outcome="transient_error",
                error="timeout",
                content_hash=None,
                policy=POLICY,
                now=now,
            )
            now = retried["next_attempt_at"]

        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=now)
        await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="delete", now=now
        )
        return await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="ok",
            error=None,
            content_hash=H1,
            policy=POLICY,
            now=now,
        )

    result = asyncio.run(run())
    assert result["status"] == "pending"
    assert result["operation"] == "delete"
    assert result["attempt_count"] == 2


def test_late_result_from_reaped_claim_is_rejected() -> None:
    async def run() -> tuple[InMemoryStatusStore, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="create", now=T0
        )
        first = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        later = T0 + timedelta(seconds=601)
        assert await store.reset_stale_tasks(liveness_timeout_seconds=600, now=later) == 1
        second = await store.mark_in_progress(task["id"], claimed_by="worker-b", now=later)
        assert second["claim_id"] != first["claim_id"]
        assert second["version"] == first["version"]

        with pytest.raises(RepositoryConflictError):
            await store.record_outcome(
                task["id"],
                claim_id=first["claim_id"],
                version=first["version"],
                outcome="permanent_error",
                error="rejected",
                content_hash=None,
                policy=POLICY,
                now=later,
            )
        result = await store.record_outcome(
            task["id"],
            claim_id=second["claim_id"],
            version=second["version"],
            outcome="ok",
            error=None,
            content_hash=H1,
            policy=POLICY,
            now=later,
        )
        return store, result

    store, result = asyncio.run(run())
    assert result["status"] == "success"
    assert result["claim_id"] is None
    assert store.entries["mbx-1"]["last_published_hash"] == H1


def test_coalescing_into_retry_keeps_schedule() -> None:
    async def run() -> dict:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="create", now=T0
        )
        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="transient_error",
            error="timeout",
            content_hash=None,
            policy=POLICY,
            now=T0,
        )
        coalesced, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="update", now=T0
        )
        return coalesced

    coalesced = asyncio.run(run())
    assert coalesced["status"] == "retry_scheduled"
    assert coalesced["operation"] == "create"
    assert coalesced["next_attempt_at"] == T0 + timedelta(seconds=120)


def test_stale_claims_return_to_pending() -> None:
    async def run() -> tuple[InMemoryStatusStore, int, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label=None, operation="create", now=T0
        )
        await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        assert await store.reset_stale_tasks(liveness_timeout_seconds=600, now=T0 + timedelta(seconds=599)) == 0
        requeued = await store.reset_stale_tasks(liveness_timeout_seconds=600, now=T0 + timedelta(seconds=600))
        return store, requeued, await store.get_task(task["id"])

    store, requeued, task = asyncio.run(run())
    assert requeued == 1
    assert task["status"] == "pending"
    assert task["claimed_by"] is None
    assert task["claim_id"] is None

    history = asyncio.run(store.list_history(limit=10, entry_id="mbx-1"))
    assert len(history) == 1
    assert history[0]["status"] == "pending"
    assert history[0]["error"] == "stale claim"
    assert history[0]["task_id"] == task["id"]


def test_retry_failed_task_enqueues_fresh_copy() -> None:
    async def run() -> tuple[dict, dict]:
        store = InMemoryStatusStore()
        task, _ = await store.enqueue_task(
            entry_id="mbx-1", entry_type="mailbox", entry_label="a@x.fr", operation="create", now=T0
        )
        with pytest.raises(RepositoryConflictError):
            await store.retry_failed_task(task["id"], now=T0)
        claimed = await store.mark_in_progress(task["id"], claimed_by="worker-a", now=T0)
        failed = await store.record_outcome(
            task["id"],
            claim_id=claimed["claim_id"],
            version=claimed["version"],
            outcome="permanent_error",
            error="rejected",
            content_hash=None,
            policy=POLICY,
            now=T0,
        )
        fresh = await store.retry_failed_task(task["id"], now=T0 + timedelta(minutes=5))
        with pytest.raises(RepositoryConflictError):
            await store.retry_failed_task(task["id"], now=T0 + timedelta(minutes=5))
        return failed, fresh

    failed, fresh = asyncio.run(run())
    assert failed["status"] == "error"
    assert fresh["id"] != failed["id"]
    assert fresh["status"] == "pending"
    assert fresh["attempt_count"] == 0
    assert fresh["operation"] == "create"


def test_sync_run_is_single_flight_with_stale_takeover() -> None:
    async def run() -> None:
        store = InMemoryStatusStore()
        first = await store.start_sync_run(trigger="scheduled", stale_after_seconds=3600, now=T0)
        assert first is not None
        assert await store.start_sync_run(trigger="manual", stale_after_seconds=3600, now=T0) is None

        takeover = await store.start_sync_run(
            trigger="scheduled", stale_after_seconds=3600, now=T0 + timedelta(hours=2)
        )
        assert takeover is not None
        abandoned = store.sync_runs[first["id"]]
        assert abandoned["status"] == "failed"
        assert abandoned["finished_at"] is not None

        finished = await store.finish_sync_run(
            takeover["id"],
            status="completed",
            scanned_count=3,
            divergent_count=1,
            enqueued_count=1,
            now=T0 + timedelta(hours=2, minutes=1),
        )
        assert finished["status"] == "completed"
        with pytest.raises(RepositoryConflictError):
            await store.finish_sync_run(
                takeover["id"], status="failed", scanned_count=0, divergent_count=0, enqueued_count=0
            )
        assert store.locks["reconciliation"]["state"] == "idle"

    asyncio.run(run())


def test_indicator_submission_guard() -> None:
    deadline = datetime(2025, 4, 10, tzinfo=timezone.utc)

    async def run() -> None:
        store = InMemoryStatusStore()
        with pytest.raises(RepositoryNotFoundError):
            await store.mark_indicator_submitted("2025-03", now=T0)
        await store.upsert_indicator_period(period="2025-03", metrics={"messages_sent": 3}, deadline=deadline, now=T0)
        submitted = await store.mark_indicator_submitted("2025-03", now=T0)
        with pytest.raises(AlreadySubmittedError):
            await store.mark_indicator_submitted("2025-03", now=T0 + timedelta(days=1))
        with pytest.raises(AlreadySubmittedError):
            await store.upsert_indicator_period(period="2025-03", metrics={}, deadline=deadline, now=T0)
        row = await store.get_indicator_period("2025-03")
        assert row["submitted_at"] == submitted["submitted_at"]
        assert row["metrics"] == {"messages_sent": 3}

    asyncio.run(run())
