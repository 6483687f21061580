from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from annuaire_api.core.config import Settings, get_settings
from annuaire_api.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from annuaire_api.services.local_source import get_local_source
from annuaire_api.services.queue import TASK_OPERATIONS, RetryPolicy
from annuaire_api.services.repository import get_repository
from annuaire_api.services.snapshot import ENTRY_TYPES, build_entry, is_publishable

logger = logging.getLogger(__name__)

MutationKind = Literal["created", "updated", "deleted"]
MUTATION_KINDS = {"created", "updated", "deleted"}

# Dashboard status filter -> stored history status.
HISTORY_STATUS_FILTERS = {
    "success": "success",
    "error": "error",
    "retry": "retry_scheduled",
    "pending": "pending",
}


@dataclass(slots=True)
class MutationResult:
    entry_id: str
    action: str
    operation: str | None
    task: dict[str, Any] | None


@dataclass(slots=True)
class ClaimedTask:
    task: dict[str, Any]
    entry: dict[str, Any] | None


@dataclass(slots=True)
class BulkRetryResult:
    retried: list[dict[str, Any]]
    failed: list[dict[str, str]]


def get_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=settings.task_max_attempts,
        base_seconds=settings.task_retry_base_seconds,
        max_seconds=settings.task_retry_max_seconds,
    )


class PublicationService:
    """Turns local mutations into queued publications and drives claimed tasks to an outcome."""

    def __init__(
        self,
        store: Any,
        source: Any,
        *,
        policy: RetryPolicy,
        operator_id: str,
        liveness_timeout_seconds: int,
    ) -> None:
        self.store = store
        self.source = source
        self.policy = policy
        self.operator_id = operator_id
        self.liveness_timeout_seconds = liveness_timeout_seconds

    async def handle_mutation(
        self,
        *,
        entry_id: str,
        entry_type: str,
        kind: str,
        now: datetime | None = None,
    ) -> MutationResult:
        if entry_type not in ENTRY_TYPES:
            raise RepositoryValidationError(f"unsupported entry type: {entry_type}")
        if kind not in MUTATION_KINDS:
            raise RepositoryValidationError(f"unsupported mutation kind: {kind}")

        state = await self.store.get_entry_state(entry_id)
        published_hash = state.get("last_published_hash") if state else None

        record = None if kind == "deleted" else await self.source.get_record(entry_id, entry_type)
        if not is_publishable(record):
            active = await self.store.get_active_task(entry_id)
            if published_hash is None and active is None:
                return MutationResult(entry_id=entry_id, action="skipped", operation=None, task=None)
            label = (state or {}).get("entry_label") or (active or {}).get("entry_label")
            task, action = await self.store.enqueue_task(
                entry_id=entry_id,
                entry_type=entry_type,
                entry_label=label,
                operation="delete",
                now=now,
            )
            logger.info("publication enqueued entry_id=%s operation=delete action=%s", entry_id, action)
            return MutationResult(entry_id=entry_id, action=action, operation=task["operation"], task=task)

        entry = build_entry(record, operator_id=self.operator_id)
        if published_hash is not None and published_hash == entry.content_hash:
            return MutationResult(entry_id=entry_id, action="skipped", operation=None, task=None)

        operation = "update" if published_hash is not None else "create"
        task, action = await self.store.enqueue_task(
            entry_id=entry_id,
            entry_type=entry_type,
            entry_label=entry.label,
            operation=operation,
            now=now,
        )
        logger.info(
            "publication enqueued entry_id=%s operation=%s action=%s",
            entry_id,
            task["operation"],
            action,
        )
        return MutationResult(entry_id=entry_id, action=action, operation=task["operation"], task=task)

    async def list_tasks(self, *, limit: int, now: datetime | None = None) -> list[dict[str, Any]]:
        return await self.store.list_eligible_tasks(limit=limit, now=now)

    async def claim_task(self, task_id: str, *, claimed_by: str, now: datetime | None = None) -> ClaimedTask:
        task = await self.store.mark_in_progress(task_id, claimed_by=claimed_by, now=now)
        if task["operation"] == "delete":
            return ClaimedTask(task=task, entry=None)

        record = await self.source.get_record(task["entry_id"], task["entry_type"])
        if not is_publishable(record):
            logger.info("entry vanished before publication; unpublishing entry_id=%s", task["entry_id"])
            task = await self.store.set_claimed_operation(task["id"], operation="delete", version=task["version"])
            return ClaimedTask(task=task, entry=None)

        entry = build_entry(record, operator_id=self.operator_id)
        return ClaimedTask(task=task, entry=entry.to_payload())

    async def submit_outcome(
        self,
        task_id: str,
        *,
        claim_id: str,
        version: int,
        outcome: str,
        error: str | None = None,
        content_hash: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        try:
            task = await self.store.record_outcome(
                task_id,
                claim_id=claim_id,
                version=version,
                outcome=outcome,
                error=error,
                content_hash=content_hash,
                policy=self.policy,
                now=now,
            )
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc

        if task["status"] == "error":
            logger.warning(
                "publication failed permanently task_id=%s entry_id=%s attempts=%s error=%s",
                task_id,
                task["entry_id"],
                task["attempt_count"],
                task["last_error"],
            )
        else:
            logger.info(
                "publication outcome task_id=%s entry_id=%s status=%s attempts=%s",
                task_id,
                task["entry_id"],
                task["status"],
                task["attempt_count"],
            )
            if task["status"] == "success":
                await self._republish_if_changed(task, now=now)
        return task

    async def reap_stale(self, *, limit: int = 100, now: datetime | None = None) -> int:
        requeued = await self.store.reset_stale_tasks(
            liveness_timeout_seconds=self.liveness_timeout_seconds,
            limit=limit,
            now=now,
        )
        if requeued:
            logger.info("requeued stale publication claims: %s", requeued)
        return requeued

    async def retry_publication(self, task_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        task = await self.store.retry_failed_task(task_id, now=now)
        logger.info("publication retry requested task_id=%s new_task_id=%s", task_id, task["id"])
        return task

    async def bulk_retry(self, task_ids: list[str], *, now: datetime | None = None) -> BulkRetryResult:
        result = BulkRetryResult(retried=[], failed=[])
        for task_id in dict.fromkeys(task_ids):
            try:
                result.retried.append(await self.retry_publication(task_id, now=now))
            except (RepositoryNotFoundError, RepositoryConflictError) as exc:
                result.failed.append({"task_id": task_id, "error": str(exc)})
        return result

    async def get_publication(self, task_id: str, *, history_limit: int = 100) -> dict[str, Any]:
        task = await self.store.get_task(task_id)
        history = await self.store.list_history(limit=history_limit, entry_id=task["entry_id"])
        return {"task": task, "history": history}

    async def list_publications(
        self,
        *,
        limit: int,
        status: str | None = None,
        operation: str | None = None,
    ) -> list[dict[str, Any]]:
        history_status = None
        if status is not None:
            history_status = HISTORY_STATUS_FILTERS.get(status)
            if history_status is None:
                raise RepositoryValidationError(f"unsupported publication status: {status}")
        if operation is not None and operation not in TASK_OPERATIONS:
            raise RepositoryValidationError(f"unsupported publication operation: {operation}")
        return await self.store.list_history(limit=limit, status=history_status, operation=operation)

    async def _republish_if_changed(self, task: dict[str, Any], *, now: datetime | None) -> None:
        # Edits that landed while the claim was in flight are not in the published content.
        try:
            result = await self.handle_mutation(
                entry_id=task["entry_id"],
                entry_type=task["entry_type"],
                kind="updated",
                now=now,
            )
        except RepositoryError:
            logger.warning(
                "follow-up publication check failed entry_id=%s; reconciliation will catch up",
                task["entry_id"],
                exc_info=True,
            )
            return
        if result.action != "skipped":
            logger.info(
                "entry changed during publication entry_id=%s operation=%s",
                task["entry_id"],
                result.operation,
            )


def get_publication_service() -> PublicationService:
    settings = get_settings()
    return PublicationService(
        get_repository(),
        get_local_source(),
        policy=get_retry_policy(settings),
        operator_id=settings.operator_id,
        liveness_timeout_seconds=settings.task_liveness_timeout_seconds,
    )
