"""Publication queue rules shared by every status store backend.

The stores own persistence and atomicity; everything that decides *what* a
transition does lives here so both backends behave identically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

TaskOperation = Literal["create", "update", "delete"]
TaskStatus = Literal["pending", "in_progress", "success", "error", "retry_scheduled"]
TaskOutcome = Literal["ok", "transient_error", "permanent_error"]

TASK_OPERATIONS = {"create", "update", "delete"}
TASK_STATUSES = {"pending", "in_progress", "success", "error", "retry_scheduled"}
NON_TERMINAL_STATUSES = {"pending", "in_progress", "retry_scheduled"}
TERMINAL_STATUSES = {"success", "error"}
TASK_OUTCOMES = {"ok", "transient_error", "permanent_error"}
SUPERSEDED_ERROR = "superseded"
STALE_CLAIM_ERROR = "stale claim"

# Dashboard vocabulary: success | pending | error | retry.
DASHBOARD_STATUSES = {
    "pending": "pending",
    "in_progress": "pending",
    "retry_scheduled": "retry",
    "success": "success",
    "error": "error",
}


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int
    base_seconds: int
    max_seconds: int

    def delay_seconds(self, attempt: int) -> int:
        if self.base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.base_seconds * (2**multiplier)
        return min(delay, max(self.base_seconds, self.max_seconds))


@dataclass(slots=True)
class OutcomeTransition:
    status: str
    attempt_count: int
    next_attempt_at: datetime | None
    last_error: str | None
    published_hash: str | None
    update_published_hash: bool


def coalesce_operation(existing: str, incoming: str) -> str:
    """Merge a newly requested operation into the one already queued for the entry."""
    if existing not in TASK_OPERATIONS or incoming not in TASK_OPERATIONS:
        raise ValueError(f"unsupported operation pair: {existing!r} -> {incoming!r}")
    if "delete" in (existing, incoming):
        return "delete"
    if "create" in (existing, incoming):
        return "create"
    return "update"


def is_eligible(task: dict[str, Any], now: datetime) -> bool:
    if task["status"] == "pending":
        return True
    if task["status"] == "retry_scheduled":
        next_attempt_at = task.get("next_attempt_at")
        return next_attempt_at is None or next_attempt_at <= now
    return False


def dequeue_order_key(task: dict[str, Any]) -> tuple[datetime, str]:
    return task["enqueued_at"], str(task["id"])


def is_stale_claim(task: dict[str, Any], *, now: datetime, liveness_timeout_seconds: int) -> bool:
    if task["status"] != "in_progress":
        return False
    claimed_at = task.get("claimed_at")
    if claimed_at is None:
        return True
    return claimed_at <= now - timedelta(seconds=liveness_timeout_seconds)


def resolve_outcome(
    task: dict[str, Any],
    *,
    outcome: str,
    error: str | None,
    content_hash: str | None,
    policy: RetryPolicy,
    now: datetime,
) -> OutcomeTransition:
    if outcome not in TASK_OUTCOMES:
        raise ValueError(f"unsupported outcome: {outcome!r}")

    attempt = int(task.get("attempt_count") or 0) + 1

    if outcome == "ok":
        is_delete = task["operation"] == "delete"
        return OutcomeTransition(
            status="success",
            attempt_count=attempt,
            next_attempt_at=None,
            last_error=None,
            published_hash=None if is_delete else content_hash,
            update_published_hash=True,
        )

    message = error or outcome
    if outcome == "permanent_error" or attempt >= policy.max_attempts:
        return OutcomeTransition(
            status="error",
            attempt_count=attempt,
            next_attempt_at=None,
            last_error=message,
            published_hash=None,
            update_published_hash=False,
        )

    return OutcomeTransition(
        status="retry_scheduled",
        attempt_count=attempt,
        next_attempt_at=now + timedelta(seconds=policy.delay_seconds(attempt)),
        last_error=message,
        published_hash=None,
        update_published_hash=False,
    )


def dashboard_status(status: str) -> str:
    return DASHBOARD_STATUSES.get(status, status)
