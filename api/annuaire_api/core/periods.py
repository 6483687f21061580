from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Literal

PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")

PeriodStatus = Literal["pending", "overdue", "submitted"]


def parse_period(raw: str) -> tuple[int, int]:
    match = PERIOD_RE.match(raw.strip()) if isinstance(raw, str) else None
    if not match:
        raise ValueError("period must use the YYYY-MM format")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError("period month must be between 01 and 12")
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def normalize_period(raw: str) -> str:
    return format_period(*parse_period(raw))


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """Return the [start, end) UTC window of a calendar month."""
    year, month = parse_period(period)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    return start, _first_of_next_month(start)


def submission_deadline(period: str, deadline_day: int = 10) -> datetime:
    _, end = period_bounds(period)
    return end.replace(day=max(1, min(deadline_day, 28)))


def previous_period(now: datetime | None = None) -> str:
    current = _as_utc(now or datetime.now(timezone.utc))
    last_day_of_previous = current.replace(day=1) - timedelta(days=1)
    return format_period(last_day_of_previous.year, last_day_of_previous.month)


def period_status(
    *,
    submitted_at: datetime | None,
    deadline: datetime,
    now: datetime | None = None,
) -> PeriodStatus:
    if submitted_at is not None:
        return "submitted"
    current = _as_utc(now or datetime.now(timezone.utc))
    return "overdue" if current >= _as_utc(deadline) else "pending"


def next_nightly_run(now: datetime | None = None, *, hour_utc: int = 2) -> datetime:
    current = _as_utc(now or datetime.now(timezone.utc))
    candidate = current.replace(hour=hour_utc % 24, minute=0, second=0, microsecond=0)
    if candidate <= current:
        candidate += timedelta(days=1)
    return candidate


def _first_of_next_month(start: datetime) -> datetime:
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
