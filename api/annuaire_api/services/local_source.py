"""Read-only access to the CRUD layer's mailboxes, domains, users and mail logs."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from annuaire_api.core.config import get_settings
from annuaire_api.services.errors import RepositoryUnavailableError
from annuaire_api.services.snapshot import is_publishable

MAILBOX_TYPES = ("personal", "organizational", "applicative")
BYTES_PER_MB = 1024 * 1024

MAILBOX_SELECT = """
select
  m.id::text as entry_id,
  m.email,
  m.type as mailbox_type,
  coalesce(m.hide_from_directory, false) as hide_from_directory,
  m.status,
  m.service_name,
  m.function_name,
  m.application_name,
  m.editor_name,
  m.application_version,
  u.rpps as rpps_id,
  u.adeli as adeli_id,
  u.last_name,
  u.first_name,
  u.civility,
  u.profession,
  u.specialty,
  d.domain_name,
  d.organization_name,
  d.finess_juridique,
  d.finess_geographique,
  d.status as domain_status
from mailboxes m
join domains d on d.id = m.domain_id
left join users u on u.id = m.owner_id
"""

DOMAIN_SELECT = """
select
  d.id::text as entry_id,
  d.domain_name,
  d.organization_name,
  d.finess_juridique,
  d.finess_geographique,
  d.status
from domains d
"""


class InMemoryLocalSource:
    """Seedable local source backing tests and database-less development."""

    def __init__(
        self,
        records: Iterable[dict[str, Any]] = (),
        mail_logs: Iterable[dict[str, Any]] = (),
    ) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.mail_logs: list[dict[str, Any]] = list(mail_logs)
        for record in records:
            self.put(record)

    async def close(self) -> None:
        return None

    def put(self, record: dict[str, Any]) -> None:
        self.records[str(record["entry_id"])] = dict(record)

    def remove(self, entry_id: str) -> None:
        self.records.pop(entry_id, None)

    async def get_record(self, entry_id: str, entry_type: str) -> dict[str, Any] | None:
        record = self.records.get(entry_id)
        if record is None or record.get("entry_type") != entry_type:
            return None
        return dict(record)

    async def iter_records(self, *, batch_size: int = 500) -> AsyncIterator[dict[str, Any]]:
        for entry_id in sorted(self.records):
            record = self.records[entry_id]
            if is_publishable(record):
                yield dict(record)

    async def usage_metrics(self, start: datetime, end: datetime) -> dict[str, float]:
        mailboxes = [record for record in self.records.values() if record.get("entry_type") == "mailbox"]
        domains = [record for record in self.records.values() if record.get("entry_type") == "domain"]

        metrics: dict[str, float] = {}
        for mailbox_type in MAILBOX_TYPES:
            metrics[f"bal_{mailbox_type}_count"] = sum(
                1
                for record in mailboxes
                if record.get("mailbox_type", "personal") == mailbox_type
                and record.get("status", "active") == "active"
                and _before(record.get("created_at"), end)
            )
        metrics["bal_created_count"] = sum(1 for record in mailboxes if _within(record.get("created_at"), start, end))
        metrics["bal_deleted_count"] = sum(1 for record in mailboxes if _within(record.get("deleted_at"), start, end))
        metrics["bal_liste_rouge_count"] = sum(
            1
            for record in mailboxes
            if record.get("hide_from_directory") and record.get("status", "active") == "active"
        )
        metrics["domains_active_count"] = sum(1 for record in domains if record.get("status", "active") == "active")

        logs = [log for log in self.mail_logs if _within(log.get("logged_at"), start, end)]
        metrics["messages_sent"] = sum(1 for log in logs if log.get("direction") == "out")
        metrics["messages_received"] = sum(1 for log in logs if log.get("direction") == "in")
        metrics["data_volume_mb"] = round(sum(int(log.get("size_bytes") or 0) for log in logs) / BYTES_PER_MB)
        return metrics


class PostgresLocalSource:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_record(self, entry_id: str, entry_type: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            if entry_type == "mailbox":
                row = await pool.fetchrow(f"{MAILBOX_SELECT} where m.id::text = $1", entry_id)
                return _mailbox_row_to_record(row) if row else None
            if entry_type == "domain":
                row = await pool.fetchrow(f"{DOMAIN_SELECT} where d.id::text = $1", entry_id)
                return _domain_row_to_record(row) if row else None
        except asyncpg.PostgresError as exc:
            raise RepositoryUnavailableError("local data source query failed") from exc
        return None

    async def iter_records(self, *, batch_size: int = 500) -> AsyncIterator[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            # Server-side cursors only live inside a transaction.
            async with conn.transaction():
                async for row in conn.cursor(
                    f"{DOMAIN_SELECT} where d.status = 'active' order by d.id",
                    prefetch=batch_size,
                ):
                    yield _domain_row_to_record(row)
                async for row in conn.cursor(
                    f"""
                    {MAILBOX_SELECT}
                    where m.status = 'active'
                      and coalesce(m.hide_from_directory, false) = false
                      and d.status = 'active'
                    order by m.id
                    """,
                    prefetch=batch_size,
                ):
                    yield _mailbox_row_to_record(row)

    async def usage_metrics(self, start: datetime, end: datetime) -> dict[str, float]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            type_rows = await conn.fetch(
                """
                select type, count(*) as count
                from mailboxes
                where status = 'active' and created_at < $1
                group by type
                """,
                end,
            )
            created = await conn.fetchval(
                "select count(*) from mailboxes where created_at >= $1 and created_at < $2",
                start,
                end,
            )
            deleted = await conn.fetchval(
                "select count(*) from mailboxes where deleted_at >= $1 and deleted_at < $2",
                start,
                end,
            )
            liste_rouge = await conn.fetchval(
                "select count(*) from mailboxes where hide_from_directory = true and status = 'active'"
            )
            domains_active = await conn.fetchval("select count(*) from domains where status = 'active'")
            traffic = await conn.fetchrow(
                """
                select
                  coalesce(sum(case when direction = 'out' then 1 else 0 end), 0) as sent,
                  coalesce(sum(case when direction = 'in' then 1 else 0 end), 0) as received,
                  coalesce(sum(size_bytes), 0) as total_bytes
                from mail_logs
                where logged_at >= $1 and logged_at < $2
                """,
                start,
                end,
            )

        counts = {row["type"]: int(row["count"]) for row in type_rows}
        metrics: dict[str, float] = {
            f"bal_{mailbox_type}_count": counts.get(mailbox_type, 0) for mailbox_type in MAILBOX_TYPES
        }
        metrics["bal_created_count"] = int(created or 0)
        metrics["bal_deleted_count"] = int(deleted or 0)
        metrics["bal_liste_rouge_count"] = int(liste_rouge or 0)
        metrics["domains_active_count"] = int(domains_active or 0)
        metrics["messages_sent"] = int(traffic["sent"])
        metrics["messages_received"] = int(traffic["received"])
        metrics["data_volume_mb"] = round(int(traffic["total_bytes"]) / BYTES_PER_MB)
        return metrics

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
                command_timeout=60,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc


def _mailbox_row_to_record(row: asyncpg.Record) -> dict[str, Any]:
    return {
        "entry_id": row["entry_id"],
        "entry_type": "mailbox",
        "email": row["email"],
        "mailbox_type": row["mailbox_type"],
        "hide_from_directory": bool(row["hide_from_directory"]),
        "status": row["status"],
        "service_name": row["service_name"],
        "function_name": row["function_name"],
        "application_name": row["application_name"],
        "editor_name": row["editor_name"],
        "application_version": row["application_version"],
        "owner": {
            "rpps_id": row["rpps_id"],
            "adeli_id": row["adeli_id"],
            "last_name": row["last_name"],
            "first_name": row["first_name"],
            "civility": row["civility"],
            "profession": row["profession"],
            "specialty": row["specialty"],
        },
        "domain": {
            "domain_name": row["domain_name"],
            "organization_name": row["organization_name"],
            "finess_juridique": row["finess_juridique"],
            "finess_geographique": row["finess_geographique"],
            "status": row["domain_status"],
        },
    }


def _domain_row_to_record(row: asyncpg.Record) -> dict[str, Any]:
    return {
        "entry_id": row["entry_id"],
        "entry_type": "domain",
        "domain_name": row["domain_name"],
        "organization_name": row["organization_name"],
        "finess_juridique": row["finess_juridique"],
        "finess_geographique": row["finess_geographique"],
        "status": row["status"],
    }


def _within(value: datetime | None, start: datetime, end: datetime) -> bool:
    return value is not None and start <= value < end


def _before(value: datetime | None, end: datetime) -> bool:
    return value is None or value < end


@lru_cache
def get_local_source() -> PostgresLocalSource | InMemoryLocalSource:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryLocalSource()
    return PostgresLocalSource(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
