from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TaskOperation = Literal["create", "update", "delete"]
TaskStatus = Literal["pending", "in_progress", "success", "error", "retry_scheduled"]
TaskOutcome = Literal["ok", "transient_error", "permanent_error"]


class TaskOut(BaseModel):
    id: str
    entry_id: str
    entry_type: str
    entry_label: str | None = None
    operation: TaskOperation
    status: TaskStatus
    attempt_count: int
    enqueued_at: datetime
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    version: int
    claim_id: str | None = None
    claimed_at: datetime | None = None
    claimed_by: str | None = None


class ClaimedTaskOut(BaseModel):
    task: TaskOut
    entry: dict[str, Any] | None = None


class TaskResultRequest(BaseModel):
    claim_id: str = Field(min_length=1, max_length=64)
    version: int = Field(ge=1)
    outcome: TaskOutcome
    error: str | None = Field(default=None, max_length=2000)
    content_hash: str | None = Field(default=None, min_length=64, max_length=64)


class TasksMaintenanceOut(BaseModel):
    requeued: int
