from __future__ import annotations

from datetime import datetime, timedelta, timezone


def previous_period(now: datetime) -> str:
    last_day_of_previous = now.astimezone(timezone.utc).replace(day=1) - timedelta(days=1)
    return f"{last_day_of_previous.year:04d}-{last_day_of_previous.month:02d}"


def nightly_slot(now: datetime, *, hour_utc: int) -> datetime:
    """Most recent nightly slot at or before `now`."""
    current = now.astimezone(timezone.utc)
    slot = current.replace(hour=hour_utc % 24, minute=0, second=0, microsecond=0)
    if slot > current:
        slot -= timedelta(days=1)
    return slot
