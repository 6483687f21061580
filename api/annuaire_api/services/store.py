from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any
from uuid import uuid4

from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from annuaire_api.services.queue import (
    NON_TERMINAL_STATUSES,
    STALE_CLAIM_ERROR,
    SUPERSEDED_ERROR,
    TASK_OPERATIONS,
    RetryPolicy,
    coalesce_operation,
    dequeue_order_key,
    is_eligible,
    is_stale_claim,
    resolve_outcome,
)

LOCK_NAMES = {"reconciliation", "indicators"}


class InMemoryStatusStore:
    """Process-local status store used when no database is configured.

    Every public method holds one asyncio lock for its whole body, which gives
    the same atomicity the Postgres store gets from row locks.
    """

    def __init__(self) -> None:
        self.entries: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.history: list[dict[str, Any]] = []
        self.sync_runs: dict[str, dict[str, Any]] = {}
        self.locks: dict[str, dict[str, Any]] = {
            name: {"name": name, "state": "idle", "holder": None, "started_at": None} for name in LOCK_NAMES
        }
        self.indicator_periods: dict[str, dict[str, Any]] = {}
        self._history_ids = count(1)
        self._guard = asyncio.Lock()

    async def close(self) -> None:
        return None

    # Directory entries

    async def get_entry_state(self, entry_id: str) -> dict[str, Any] | None:
        async with self._guard:
            entry = self.entries.get(entry_id)
            return dict(entry) if entry else None

    async def list_published_entries(self) -> list[dict[str, Any]]:
        async with self._guard:
            return [dict(entry) for entry in self.entries.values() if entry.get("last_published_hash")]

    async def count_published_entries(self) -> int:
        async with self._guard:
            return sum(1 for entry in self.entries.values() if entry.get("last_published_hash"))

    # Publication queue

    async def enqueue_task(
        self,
        *,
        entry_id: str,
        entry_type: str,
        entry_label: str | None,
        operation: str,
        now: datetime | None = None,
    ) -> tuple[dict[str, Any], str]:
        if operation not in TASK_OPERATIONS:
            raise RepositoryValidationError(f"unsupported operation: {operation}")
        current = now or datetime.now(timezone.utc)

        async with self._guard:
            existing = self._active_task(entry_id)
            if existing is not None:
                merged = coalesce_operation(existing["operation"], operation)
                existing["entry_label"] = entry_label or existing.get("entry_label")
                existing["updated_at"] = current
                if merged == existing["operation"]:
                    return dict(existing), "merged"
                existing["operation"] = merged
                existing["version"] += 1
                return dict(existing), "coalesced"

            task = {
                "id": str(uuid4()),
                "entry_id": entry_id,
                "entry_type": entry_type,
                "entry_label": entry_label,
                "operation": operation,
                "status": "pending",
                "attempt_count": 0,
                "enqueued_at": current,
                "next_attempt_at": None,
                "last_error": None,
                "version": 1,
                "claim_id": None,
                "claimed_at": None,
                "claimed_by": None,
                "updated_at": current,
            }
            self.tasks[task["id"]] = task
            return dict(task), "created"

    async def get_task(self, task_id: str) -> dict[str, Any]:
        async with self._guard:
            return dict(self._require_task(task_id))

    async def get_active_task(self, entry_id: str) -> dict[str, Any] | None:
        async with self._guard:
            task = self._active_task(entry_id)
            return dict(task) if task else None

    async def list_eligible_tasks(self, *, limit: int, now: datetime | None = None) -> list[dict[str, Any]]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            eligible = [task for task in self.tasks.values() if is_eligible(task, current)]
            eligible.sort(key=dequeue_order_key)
            return [dict(task) for task in eligible[: max(1, limit)]]

    async def dequeue(self, *, now: datetime | None = None) -> dict[str, Any] | None:
        tasks = await self.list_eligible_tasks(limit=1, now=now)
        return tasks[0] if tasks else None

    async def mark_in_progress(
        self,
        task_id: str,
        *,
        claimed_by: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            task = self._require_task(task_id)
            if not is_eligible(task, current):
                raise RepositoryConflictError("task is not claimable")
            task["status"] = "in_progress"
            task["claim_id"] = str(uuid4())
            task["claimed_at"] = current
            task["claimed_by"] = claimed_by
            task["updated_at"] = current
            return dict(task)

    async def set_claimed_operation(self, task_id: str, *, operation: str, version: int) -> dict[str, Any]:
        async with self._guard:
            task = self._require_task(task_id)
            if task["status"] != "in_progress" or task["version"] != version:
                raise RepositoryConflictError("task is no longer owned by this claim")
            task["operation"] = operation
            return dict(task)

    async def record_outcome(
        self,
        task_id: str,
        *,
        claim_id: str,
        version: int,
        outcome: str,
        error: str | None,
        content_hash: str | None,
        policy: RetryPolicy,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            task = self._require_task(task_id)
            if task["status"] != "in_progress":
                raise RepositoryConflictError("task is not in progress")
            if task.get("claim_id") != claim_id:
                raise RepositoryConflictError("task is claimed by another worker")

            if task["version"] != version:
                # The operation changed while the call was in flight; redo it, keeping the attempt budget.
                task.update(
                    status="pending",
                    next_attempt_at=None,
                    last_error=SUPERSEDED_ERROR,
                    claim_id=None,
                    claimed_at=None,
                    claimed_by=None,
                    updated_at=current,
                )
                self._append_history(task, status="pending", error=SUPERSEDED_ERROR, now=current)
                return dict(task)

            transition = resolve_outcome(
                task,
                outcome=outcome,
                error=error,
                content_hash=content_hash,
                policy=policy,
                now=current,
            )
            task.update(
                status=transition.status,
                attempt_count=transition.attempt_count,
                next_attempt_at=transition.next_attempt_at,
                last_error=transition.last_error,
                claim_id=None,
                claimed_at=None,
                claimed_by=None,
                updated_at=current,
            )
            if transition.update_published_hash:
                entry = self.entries.setdefault(
                    task["entry_id"],
                    {"entry_id": task["entry_id"], "entry_type": task["entry_type"]},
                )
                entry["entry_label"] = task.get("entry_label")
                entry["last_published_hash"] = transition.published_hash
                entry["last_published_at"] = current if transition.published_hash else None
                entry["updated_at"] = current
            self._append_history(task, status=transition.status, error=transition.last_error, now=current)
            return dict(task)

    async def reset_stale_tasks(
        self,
        *,
        liveness_timeout_seconds: int,
        limit: int = 100,
        now: datetime | None = None,
    ) -> int:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            stale = [
                task
                for task in self.tasks.values()
                if is_stale_claim(task, now=current, liveness_timeout_seconds=liveness_timeout_seconds)
            ]
            stale.sort(key=lambda task: task["claimed_at"] or task["enqueued_at"])
            for task in stale[: max(1, limit)]:
                task.update(status="pending", claim_id=None, claimed_at=None, claimed_by=None, updated_at=current)
                self._append_history(task, status="pending", error=STALE_CLAIM_ERROR, now=current)
            return min(len(stale), max(1, limit))

    async def retry_failed_task(self, task_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            failed = self._require_task(task_id)
            if failed["status"] != "error":
                raise RepositoryConflictError("only failed publications can be retried")
            if self._active_task(failed["entry_id"]) is not None:
                raise RepositoryConflictError("entry already has a queued publication")
            task = {
                **failed,
                "id": str(uuid4()),
                "status": "pending",
                "attempt_count": 0,
                "enqueued_at": current,
                "next_attempt_at": None,
                "last_error": None,
                "version": 1,
                "claim_id": None,
                "claimed_at": None,
                "claimed_by": None,
                "updated_at": current,
            }
            self.tasks[task["id"]] = task
            return dict(task)

    async def list_history(
        self,
        *,
        limit: int,
        status: str | None = None,
        entry_id: str | None = None,
        operation: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._guard:
            rows = [
                record
                for record in self.history
                if (status is None or record["status"] == status)
                and (entry_id is None or record["entry_id"] == entry_id)
                and (operation is None or record["operation"] == operation)
            ]
            rows.sort(key=lambda record: (record["attempted_at"], record["id"]), reverse=True)
            return [dict(record) for record in rows[:limit]]

    # Sync runs and scheduler locks

    async def try_acquire_lock(
        self,
        name: str,
        *,
        holder: str,
        stale_after_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            return self._acquire(name, holder=holder, stale_after_seconds=stale_after_seconds, now=current)

    async def release_lock(self, name: str) -> None:
        async with self._guard:
            self._release(name)

    async def start_sync_run(
        self,
        *,
        trigger: str,
        stale_after_seconds: int,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            if not self._acquire("reconciliation", holder=trigger, stale_after_seconds=stale_after_seconds, now=current):
                return None
            for run in self.sync_runs.values():
                if run["status"] == "running":
                    run.update(status="failed", finished_at=current, error="abandoned: lock expired")
            run = {
                "id": str(uuid4()),
                "trigger": trigger,
                "status": "running",
                "started_at": current,
                "finished_at": None,
                "scanned_count": 0,
                "divergent_count": 0,
                "enqueued_count": 0,
                "error": None,
            }
            self.sync_runs[run["id"]] = run
            return dict(run)

    async def finish_sync_run(
        self,
        run_id: str,
        *,
        status: str,
        scanned_count: int,
        divergent_count: int,
        enqueued_count: int,
        error: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            run = self.sync_runs.get(run_id)
            if run is None:
                raise RepositoryNotFoundError("sync run not found")
            if run["finished_at"] is not None:
                raise RepositoryConflictError("sync run already finished")
            run.update(
                status=status,
                finished_at=current,
                scanned_count=scanned_count,
                divergent_count=divergent_count,
                enqueued_count=enqueued_count,
                error=error,
            )
            self._release("reconciliation")
            return dict(run)

    async def list_sync_runs(self, *, limit: int) -> list[dict[str, Any]]:
        async with self._guard:
            runs = sorted(self.sync_runs.values(), key=lambda run: run["started_at"], reverse=True)
            return [dict(run) for run in runs[:limit]]

    async def latest_finished_sync_run(self) -> dict[str, Any] | None:
        async with self._guard:
            finished = [run for run in self.sync_runs.values() if run["finished_at"] is not None]
            if not finished:
                return None
            return dict(max(finished, key=lambda run: run["finished_at"]))

    # Indicator periods

    async def upsert_indicator_period(
        self,
        *,
        period: str,
        metrics: dict[str, float],
        deadline: datetime,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            row = self.indicator_periods.get(period)
            if row is not None and row["submitted_at"] is not None:
                raise AlreadySubmittedError(period)
            if row is None:
                row = {"period": period, "submitted_at": None, "overdue_flagged_at": None}
                self.indicator_periods[period] = row
            row.update(metrics=dict(metrics), deadline=deadline, generated_at=current)
            return _copy_period(row)

    async def get_indicator_period(self, period: str) -> dict[str, Any] | None:
        async with self._guard:
            row = self.indicator_periods.get(period)
            return _copy_period(row) if row else None

    async def list_indicator_periods(self, *, limit: int) -> list[dict[str, Any]]:
        async with self._guard:
            rows = sorted(self.indicator_periods.values(), key=lambda row: row["period"], reverse=True)
            return [_copy_period(row) for row in rows[:limit]]

    async def mark_indicator_submitted(self, period: str, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            row = self.indicator_periods.get(period)
            if row is None:
                raise RepositoryNotFoundError(f"indicator period {period} not found")
            if row["submitted_at"] is not None:
                raise AlreadySubmittedError(period)
            row["submitted_at"] = current
            return _copy_period(row)

    async def flag_overdue_periods(self, *, now: datetime | None = None) -> list[str]:
        current = now or datetime.now(timezone.utc)
        async with self._guard:
            flagged: list[str] = []
            for row in self.indicator_periods.values():
                if row["submitted_at"] is None and row["overdue_flagged_at"] is None and current >= row["deadline"]:
                    row["overdue_flagged_at"] = current
                    flagged.append(row["period"])
            return sorted(flagged)

    # Internals; callers hold self._guard.

    def _active_task(self, entry_id: str) -> dict[str, Any] | None:
        for task in self.tasks.values():
            if task["entry_id"] == entry_id and task["status"] in NON_TERMINAL_STATUSES:
                return task
        return None

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self.tasks.get(task_id)
        if task is None:
            raise RepositoryNotFoundError("task not found")
        return task

    def _append_history(self, task: dict[str, Any], *, status: str, error: str | None, now: datetime) -> None:
        self.history.append(
            {
                "id": next(self._history_ids),
                "task_id": task["id"],
                "entry_id": task["entry_id"],
                "entry_type": task["entry_type"],
                "entry_label": task.get("entry_label"),
                "operation": task["operation"],
                "status": status,
                "attempt_count": task["attempt_count"],
                "attempted_at": now,
                "error": error,
            }
        )

    def _acquire(self, name: str, *, holder: str, stale_after_seconds: int, now: datetime) -> bool:
        lock = self.locks.get(name)
        if lock is None:
            raise RepositoryValidationError(f"unknown scheduler lock: {name}")
        if lock["state"] == "running":
            started_at = lock["started_at"]
            if started_at is not None and started_at > now - timedelta(seconds=stale_after_seconds):
                return False
        lock.update(state="running", holder=holder, started_at=now)
        return True

    def _release(self, name: str) -> None:
        lock = self.locks.get(name)
        if lock is not None:
            lock.update(state="idle", holder=None, started_at=None)


def _copy_period(row: dict[str, Any]) -> dict[str, Any]:
    copied = dict(row)
    copied["metrics"] = dict(row.get("metrics") or {})
    return copied
