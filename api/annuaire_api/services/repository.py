from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from annuaire_api.core.config import get_settings
from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from annuaire_api.services.queue import (
    STALE_CLAIM_ERROR,
    SUPERSEDED_ERROR,
    TASK_OPERATIONS,
    RetryPolicy,
    coalesce_operation,
    resolve_outcome,
)
from annuaire_api.services.store import InMemoryStatusStore

__all__ = [
    "AlreadySubmittedError",
    "PostgresStatusStore",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

TASK_COLUMNS = """
  id::text as id,
  entry_id,
  entry_type,
  entry_label,
  operation::text as operation,
  status::text as status,
  attempt_count,
  enqueued_at,
  next_attempt_at,
  last_error,
  version,
  claim_id,
  claimed_at,
  claimed_by,
  updated_at
"""

RUN_COLUMNS = """
  id::text as id,
  trigger,
  status::text as status,
  started_at,
  finished_at,
  scanned_count,
  divergent_count,
  enqueued_count,
  error
"""

PERIOD_COLUMNS = """
  period,
  metrics,
  deadline,
  generated_at,
  submitted_at,
  overdue_flagged_at
"""

ENQUEUE_MAX_RETRIES = 3


class PostgresStatusStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Directory entries

    async def get_entry_state(self, entry_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select entry_id, entry_type, entry_label, last_published_hash, last_published_at, updated_at
            from directory_entries
            where entry_id = $1
            """,
            entry_id,
        )
        return dict(row) if row else None

    async def list_published_entries(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select entry_id, entry_type, entry_label, last_published_hash, last_published_at, updated_at
            from directory_entries
            where last_published_hash is not null
            order by entry_id
            """
        )
        return [dict(row) for row in rows]

    async def count_published_entries(self) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval("select count(*) from directory_entries where last_published_hash is not null")
        return int(value or 0)

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
        pool = await self._get_pool()

        for _ in range(ENQUEUE_MAX_RETRIES):
            try:
                async with pool.acquire() as conn:
                    async with conn.transaction():
                        existing = await conn.fetchrow(
                            f"""
                            select {TASK_COLUMNS}
                            from publication_tasks
                            where entry_id = $1
                              and status in ('pending', 'in_progress', 'retry_scheduled')
                            for update
                            """,
                            entry_id,
                        )
                        if existing is not None:
                            merged = coalesce_operation(existing["operation"], operation)
                            changed = merged != existing["operation"]
                            row = await conn.fetchrow(
                                f"""
                                update publication_tasks
                                set
                                  operation = $2::publication_operation,
                                  entry_label = coalesce($3, entry_label),
                                  version = case when $5::boolean then version + 1 else version end,
                                  updated_at = $4
                                where id = $1::uuid
                                returning {TASK_COLUMNS}
                                """,
                                existing["id"],
                                merged,
                                entry_label,
                                current,
                                changed,
                            )
                            return self._task_row_to_dict(row), "coalesced" if changed else "merged"

                        row = await conn.fetchrow(
                            f"""
                            insert into publication_tasks (
                              entry_id, entry_type, entry_label, operation, enqueued_at, updated_at
                            )
                            values ($1, $2, $3, $4::publication_operation, $5, $5)
                            returning {TASK_COLUMNS}
                            """,
                            entry_id,
                            entry_type,
                            entry_label,
                            operation,
                            current,
                        )
                        return self._task_row_to_dict(row), "created"
            except pg_exc.UniqueViolationError:
                # A concurrent enqueue created the active task first; coalesce into it.
                continue
        raise RepositoryConflictError("could not enqueue task after concurrent updates")

    async def get_task(self, task_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {TASK_COLUMNS} from publication_tasks where id = $1::uuid", task_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc
        if not row:
            raise RepositoryNotFoundError("task not found")
        return self._task_row_to_dict(row)

    async def get_active_task(self, entry_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {TASK_COLUMNS}
            from publication_tasks
            where entry_id = $1 and status in ('pending', 'in_progress', 'retry_scheduled')
            """,
            entry_id,
        )
        return self._task_row_to_dict(row) if row else None

    async def list_eligible_tasks(self, *, limit: int, now: datetime | None = None) -> list[dict[str, Any]]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {TASK_COLUMNS}
            from publication_tasks
            where status = 'pending'
               or (status = 'retry_scheduled' and (next_attempt_at is null or next_attempt_at <= $2))
            order by enqueued_at asc, id asc
            limit $1
            """,
            max(1, min(limit, 1000)),
            current,
        )
        return [self._task_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update publication_tasks
                        set
                          status = 'in_progress',
                          claim_id = $4,
                          claimed_at = $2,
                          claimed_by = $3,
                          updated_at = $2
                        where id = $1::uuid
                          and (
                            status = 'pending'
                            or (status = 'retry_scheduled' and (next_attempt_at is null or next_attempt_at <= $2))
                          )
                        returning {TASK_COLUMNS}
                        """,
                        task_id,
                        current,
                        claimed_by,
                        str(uuid4()),
                    )
                    if not row:
                        exists = await conn.fetchval("select 1 from publication_tasks where id = $1::uuid", task_id)
                        if not exists:
                            raise RepositoryNotFoundError("task not found")
                        raise RepositoryConflictError("task is not claimable")
                    return self._task_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc

    async def set_claimed_operation(self, task_id: str, *, operation: str, version: int) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update publication_tasks
            set operation = $2::publication_operation
            where id = $1::uuid and status = 'in_progress' and version = $3
            returning {TASK_COLUMNS}
            """,
            task_id,
            operation,
            version,
        )
        if not row:
            raise RepositoryConflictError("task is no longer owned by this claim")
        return self._task_row_to_dict(row)

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
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    claimed = await conn.fetchrow(
                        f"select {TASK_COLUMNS} from publication_tasks where id = $1::uuid for update",
                        task_id,
                    )
                    if not claimed:
                        raise RepositoryNotFoundError("task not found")
                    if claimed["status"] != "in_progress":
                        raise RepositoryConflictError("task is not in progress")
                    if claimed["claim_id"] != claim_id:
                        raise RepositoryConflictError("task is claimed by another worker")

                    if claimed["version"] != version:
                        row = await conn.fetchrow(
                            f"""
                            update publication_tasks
                            set
                              status = 'pending',
                              next_attempt_at = null,
                              last_error = $2,
                              claim_id = null,
                              claimed_at = null,
                              claimed_by = null,
                              updated_at = $3
                            where id = $1::uuid
                            returning {TASK_COLUMNS}
                            """,
                            task_id,
                            SUPERSEDED_ERROR,
                            current,
                        )
                        await self._insert_history(conn, row, status="pending", error=SUPERSEDED_ERROR, now=current)
                        return self._task_row_to_dict(row)

                    transition = resolve_outcome(
                        self._task_row_to_dict(claimed),
                        outcome=outcome,
                        error=error,
                        content_hash=content_hash,
                        policy=policy,
                        now=current,
                    )
                    row = await conn.fetchrow(
                        f"""
                        update publication_tasks
                        set
                          status = $2::publication_status,
                          attempt_count = $3,
                          next_attempt_at = $4,
                          last_error = $5,
                          claim_id = null,
                          claimed_at = null,
                          claimed_by = null,
                          updated_at = $6
                        where id = $1::uuid
                        returning {TASK_COLUMNS}
                        """,
                        task_id,
                        transition.status,
                        transition.attempt_count,
                        transition.next_attempt_at,
                        transition.last_error,
                        current,
                    )
                    if transition.update_published_hash:
                        await conn.execute(
                            """
                            insert into directory_entries (
                              entry_id, entry_type, entry_label, last_published_hash, last_published_at, updated_at
                            )
                            values ($1, $2, $3, $4, case when $4::text is null then null else $5 end, $5)
                            on conflict (entry_id) do update set
                              entry_type = excluded.entry_type,
                              entry_label = excluded.entry_label,
                              last_published_hash = excluded.last_published_hash,
                              last_published_at = excluded.last_published_at,
                              updated_at = excluded.updated_at
                            """,
                            row["entry_id"],
                            row["entry_type"],
                            row["entry_label"],
                            transition.published_hash,
                            current,
                        )
                    await self._insert_history(
                        conn,
                        row,
                        status=transition.status,
                        error=transition.last_error,
                        now=current,
                    )
                    return self._task_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc

    async def reset_stale_tasks(
        self,
        *,
        liveness_timeout_seconds: int,
        limit: int = 100,
        now: datetime | None = None,
    ) -> int:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with stale as (
              select id
              from publication_tasks
              where status = 'in_progress'
                and (claimed_at is null or claimed_at <= $2 - ($3::int * interval '1 second'))
              order by claimed_at asc nulls first
              limit $1
              for update skip locked
            ),
            updated as (
              update publication_tasks t
              set status = 'pending', claim_id = null, claimed_at = null, claimed_by = null, updated_at = $2
              from stale s
              where t.id = s.id
              returning t.*
            )
            insert into publication_history (
              task_id, entry_id, entry_type, entry_label, operation, status, attempt_count, attempted_at, error
            )
            select id, entry_id, entry_type, entry_label, operation, 'pending', attempt_count, $2, $4
            from updated
            returning task_id::text as id
            """,
            max(1, min(limit, 1000)),
            current,
            liveness_timeout_seconds,
            STALE_CLAIM_ERROR,
        )
        return len(rows)

    async def retry_failed_task(self, task_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    failed = await conn.fetchrow(
                        f"select {TASK_COLUMNS} from publication_tasks where id = $1::uuid for update",
                        task_id,
                    )
                    if not failed:
                        raise RepositoryNotFoundError("task not found")
                    if failed["status"] != "error":
                        raise RepositoryConflictError("only failed publications can be retried")
                    row = await conn.fetchrow(
                        f"""
                        insert into publication_tasks (
                          entry_id, entry_type, entry_label, operation, enqueued_at, updated_at
                        )
                        values ($1, $2, $3, $4::publication_operation, $5, $5)
                        returning {TASK_COLUMNS}
                        """,
                        failed["entry_id"],
                        failed["entry_type"],
                        failed["entry_label"],
                        failed["operation"],
                        current,
                    )
                    return self._task_row_to_dict(row)
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("entry already has a queued publication") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("task not found") from exc

    async def list_history(
        self,
        *,
        limit: int,
        status: str | None = None,
        entry_id: str | None = None,
        operation: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              task_id::text as task_id,
              entry_id,
              entry_type,
              entry_label,
              operation::text as operation,
              status::text as status,
              attempt_count,
              attempted_at,
              error
            from publication_history
            where ($2::text is null or status::text = $2)
              and ($3::text is null or entry_id = $3)
              and ($4::text is null or operation::text = $4)
            order by attempted_at desc, id desc
            limit $1
            """,
            max(1, min(limit, 1000)),
            status,
            entry_id,
            operation,
        )
        return [dict(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._acquire_lock(
                conn,
                name,
                holder=holder,
                stale_after_seconds=stale_after_seconds,
                now=current,
            )

    async def release_lock(self, name: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update scheduler_locks set state = 'idle', holder = null, started_at = null where name = $1",
            name,
        )

    async def start_sync_run(
        self,
        *,
        trigger: str,
        stale_after_seconds: int,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                acquired = await self._acquire_lock(
                    conn,
                    "reconciliation",
                    holder=trigger,
                    stale_after_seconds=stale_after_seconds,
                    now=current,
                )
                if not acquired:
                    return None
                await conn.execute(
                    """
                    update sync_runs
                    set status = 'failed', finished_at = $1, error = 'abandoned: lock expired'
                    where status = 'running'
                    """,
                    current,
                )
                row = await conn.fetchrow(
                    f"""
                    insert into sync_runs (trigger, status, started_at)
                    values ($1, 'running', $2)
                    returning {RUN_COLUMNS}
                    """,
                    trigger,
                    current,
                )
                return dict(row)

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update sync_runs
                    set
                      status = $2::sync_run_status,
                      finished_at = $3,
                      scanned_count = $4,
                      divergent_count = $5,
                      enqueued_count = $6,
                      error = $7
                    where id = $1::uuid and finished_at is null
                    returning {RUN_COLUMNS}
                    """,
                    run_id,
                    status,
                    current,
                    scanned_count,
                    divergent_count,
                    enqueued_count,
                    error,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from sync_runs where id = $1::uuid", run_id)
                    if not exists:
                        raise RepositoryNotFoundError("sync run not found")
                    raise RepositoryConflictError("sync run already finished")
                await conn.execute(
                    """
                    update scheduler_locks
                    set state = 'idle', holder = null, started_at = null
                    where name = 'reconciliation'
                    """
                )
                return dict(row)

    async def list_sync_runs(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {RUN_COLUMNS} from sync_runs order by started_at desc limit $1",
            max(1, min(limit, 1000)),
        )
        return [dict(row) for row in rows]

    async def latest_finished_sync_run(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {RUN_COLUMNS}
            from sync_runs
            where finished_at is not null
            order by finished_at desc
            limit 1
            """
        )
        return dict(row) if row else None

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into indicator_periods (period, metrics, deadline, generated_at)
                    values ($1, $2::jsonb, $3, $4)
                    on conflict (period) do update set
                      metrics = excluded.metrics,
                      deadline = excluded.deadline,
                      generated_at = excluded.generated_at
                    where indicator_periods.submitted_at is null
                    returning {PERIOD_COLUMNS}
                    """,
                    period,
                    json.dumps(metrics),
                    deadline,
                    current,
                )
                if not row:
                    raise AlreadySubmittedError(period)
                return self._period_row_to_dict(row)

    async def get_indicator_period(self, period: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {PERIOD_COLUMNS} from indicator_periods where period = $1", period)
        return self._period_row_to_dict(row) if row else None

    async def list_indicator_periods(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {PERIOD_COLUMNS} from indicator_periods order by period desc limit $1",
            max(1, min(limit, 1000)),
        )
        return [self._period_row_to_dict(row) for row in rows]

    async def mark_indicator_submitted(self, period: str, *, now: datetime | None = None) -> dict[str, Any]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update indicator_periods
                    set submitted_at = $2
                    where period = $1 and submitted_at is null
                    returning {PERIOD_COLUMNS}
                    """,
                    period,
                    current,
                )
                if not row:
                    exists = await conn.fetchval("select 1 from indicator_periods where period = $1", period)
                    if not exists:
                        raise RepositoryNotFoundError(f"indicator period {period} not found")
                    raise AlreadySubmittedError(period)
                return self._period_row_to_dict(row)

    async def flag_overdue_periods(self, *, now: datetime | None = None) -> list[str]:
        current = now or datetime.now(timezone.utc)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update indicator_periods
            set overdue_flagged_at = $1
            where submitted_at is null and overdue_flagged_at is null and deadline <= $1
            returning period
            """,
            current,
        )
        return sorted(row["period"] for row in rows)

    async def _acquire_lock(
        self,
        conn: asyncpg.Connection,
        name: str,
        *,
        holder: str,
        stale_after_seconds: int,
        now: datetime,
    ) -> bool:
        row = await conn.fetchrow(
            """
            update scheduler_locks
            set state = 'running', holder = $2, started_at = $3
            where name = $1
              and (
                state = 'idle'
                or started_at is null
                or started_at <= $3 - ($4::int * interval '1 second')
              )
            returning name
            """,
            name,
            holder,
            now,
            stale_after_seconds,
        )
        if row:
            return True
        exists = await conn.fetchval("select 1 from scheduler_locks where name = $1", name)
        if not exists:
            raise RepositoryValidationError(f"unknown scheduler lock: {name}")
        return False

    async def _insert_history(
        self,
        conn: asyncpg.Connection,
        task: asyncpg.Record,
        *,
        status: str,
        error: str | None,
        now: datetime,
    ) -> None:
        await conn.execute(
            """
            insert into publication_history (
              task_id, entry_id, entry_type, entry_label, operation, status, attempt_count, attempted_at, error
            )
            values ($1::uuid, $2, $3, $4, $5::publication_operation, $6::publication_status, $7, $8, $9)
            """,
            task["id"],
            task["entry_id"],
            task["entry_type"],
            task["entry_label"],
            task["operation"],
            status,
            task["attempt_count"],
            now,
            error,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ANN_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _task_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "entry_id": row["entry_id"],
            "entry_type": row["entry_type"],
            "entry_label": row["entry_label"],
            "operation": row["operation"],
            "status": row["status"],
            "attempt_count": int(row["attempt_count"]),
            "enqueued_at": row["enqueued_at"],
            "next_attempt_at": row["next_attempt_at"],
            "last_error": row["last_error"],
            "version": int(row["version"]),
            "claim_id": row["claim_id"],
            "claimed_at": row["claimed_at"],
            "claimed_by": row["claimed_by"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _period_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        metrics = row["metrics"]
        if isinstance(metrics, str):
            try:
                metrics = json.loads(metrics)
            except json.JSONDecodeError:
                metrics = {}
        if not isinstance(metrics, dict):
            metrics = {}
        return {
            "period": row["period"],
            "metrics": metrics,
            "deadline": row["deadline"],
            "generated_at": row["generated_at"],
            "submitted_at": row["submitted_at"],
            "overdue_flagged_at": row["overdue_flagged_at"],
        }


@lru_cache
def get_repository() -> PostgresStatusStore | InMemoryStatusStore:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryStatusStore()
    return PostgresStatusStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
