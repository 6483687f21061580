from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Any

from annuaire_api.core.config import get_settings
from annuaire_api.core.periods import (
    normalize_period,
    parse_period,
    period_bounds,
    period_status,
    previous_period,
    submission_deadline,
)
from annuaire_api.services.errors import (
    AlreadySubmittedError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from annuaire_api.services.local_source import get_local_source
from annuaire_api.services.repository import get_repository

logger = logging.getLogger(__name__)

METRIC_NAMES = (
    "bal_personal_count",
    "bal_organizational_count",
    "bal_applicative_count",
    "bal_created_count",
    "bal_deleted_count",
    "bal_liste_rouge_count",
    "domains_active_count",
    "messages_sent",
    "messages_received",
    "data_volume_mb",
)

CSV_COLUMNS = (
    ("bal_personal_count", "bal_personnelles"),
    ("bal_organizational_count", "bal_organisationnelles"),
    ("bal_applicative_count", "bal_applicatives"),
    ("bal_created_count", "bal_creees"),
    ("bal_deleted_count", "bal_supprimees"),
    ("bal_liste_rouge_count", "bal_liste_rouge"),
    ("domains_active_count", "domaines_actifs"),
    ("messages_sent", "messages_envoyes"),
    ("messages_received", "messages_recus"),
    ("data_volume_mb", "volume_donnees_mb"),
)

INDICATORS_LOCK = "indicators"


class IndicatorService:
    def __init__(
        self,
        store: Any,
        source: Any,
        *,
        operator_id: str,
        deadline_day: int = 10,
        stale_after_seconds: int = 21600,
    ) -> None:
        self.store = store
        self.source = source
        self.operator_id = operator_id
        self.deadline_day = deadline_day
        self.stale_after_seconds = stale_after_seconds

    def resolve_period(self, raw: str, *, now: datetime | None = None) -> str:
        """`current` is the month whose submission window is open, i.e. the previous calendar month."""
        if raw == "current":
            return previous_period(now)
        try:
            return normalize_period(raw)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc

    async def aggregate_month(self, period: str, *, now: datetime | None = None) -> dict[str, Any]:
        period = self.resolve_period(period, now=now)
        current = now or datetime.now(timezone.utc)

        existing = await self.store.get_indicator_period(period)
        if existing is not None and existing["submitted_at"] is not None:
            raise AlreadySubmittedError(period)

        acquired = await self.store.try_acquire_lock(
            INDICATORS_LOCK,
            holder=f"aggregate:{period}",
            stale_after_seconds=self.stale_after_seconds,
            now=current,
        )
        if not acquired:
            raise RepositoryConflictError("indicator aggregation already running")

        try:
            start, end = period_bounds(period)
            raw_metrics = await self.source.usage_metrics(start, end)
            metrics = {name: raw_metrics.get(name, 0) for name in METRIC_NAMES}
            row = await self.store.upsert_indicator_period(
                period=period,
                metrics=metrics,
                deadline=submission_deadline(period, self.deadline_day),
                now=current,
            )
        finally:
            await self.store.release_lock(INDICATORS_LOCK)

        logger.info("indicators aggregated period=%s", period)
        return self.to_view(row, now=current)

    async def submit(self, period: str, *, now: datetime | None = None) -> dict[str, Any]:
        period = self.resolve_period(period, now=now)
        current = now or datetime.now(timezone.utc)
        row = await self.store.mark_indicator_submitted(period, now=current)
        logger.info("indicators submitted period=%s", period)
        return self.to_view(row, now=current)

    async def flag_overdue(self, *, now: datetime | None = None) -> list[str]:
        flagged = await self.store.flag_overdue_periods(now=now)
        for period in flagged:
            logger.warning("indicator period overdue period=%s", period)
        return flagged

    async def get_period(self, period: str, *, now: datetime | None = None) -> dict[str, Any]:
        period = self.resolve_period(period, now=now)
        current = now or datetime.now(timezone.utc)
        row = await self.store.get_indicator_period(period)
        if row is None:
            # Not aggregated yet; the deadline still applies.
            row = {
                "period": period,
                "metrics": {},
                "deadline": submission_deadline(period, self.deadline_day),
                "generated_at": None,
                "submitted_at": None,
                "overdue_flagged_at": None,
            }
        return self.to_view(row, now=current)

    async def list_periods(self, *, limit: int, now: datetime | None = None) -> list[dict[str, Any]]:
        current = now or datetime.now(timezone.utc)
        rows = await self.store.list_indicator_periods(limit=limit)
        return [self.to_view(row, now=current) for row in rows]

    async def export_csv(self, period: str, *, now: datetime | None = None) -> str:
        period = self.resolve_period(period, now=now)
        row = await self.store.get_indicator_period(period)
        if row is None:
            raise RepositoryNotFoundError(f"indicator period {period} not found")

        year, month = parse_period(period)
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=";", lineterminator="\n")
        writer.writerow(["operateur_id", "annee", "mois", *(label for _, label in CSV_COLUMNS)])
        metrics = row.get("metrics") or {}
        writer.writerow(
            [
                self.operator_id,
                year,
                f"{month:02d}",
                *(_format_metric(metrics.get(name, 0)) for name, _ in CSV_COLUMNS),
            ]
        )
        return buffer.getvalue()

    @staticmethod
    def to_view(row: dict[str, Any], *, now: datetime) -> dict[str, Any]:
        return {
            "period": row["period"],
            "metrics": dict(row.get("metrics") or {}),
            "deadline": row["deadline"],
            "generated_at": row.get("generated_at"),
            "submitted_at": row.get("submitted_at"),
            "overdue_flagged_at": row.get("overdue_flagged_at"),
            "status": period_status(submitted_at=row.get("submitted_at"), deadline=row["deadline"], now=now),
        }


def _format_metric(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def get_indicator_service() -> IndicatorService:
    settings = get_settings()
    return IndicatorService(
        get_repository(),
        get_local_source(),
        operator_id=settings.operator_id,
        deadline_day=settings.indicator_deadline_day,
        stale_after_seconds=settings.scheduler_lock_stale_seconds,
    )
