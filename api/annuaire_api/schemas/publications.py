from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from annuaire_api.schemas.tasks import TaskOperation, TaskOut

DashboardStatus = Literal["success", "pending", "error", "retry"]


class PublicationOut(BaseModel):
    """One attempt outcome as shown in the dashboard publication list."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    task_id: str = Field(alias="taskId")
    entry_id: str = Field(alias="entryId")
    email: str | None = None
    operation: TaskOperation
    attempted_at: datetime = Field(alias="attemptedAt")
    status: DashboardStatus
    attempt_count: int = Field(alias="attemptCount")
    error: str | None = None


class PublicationDetailOut(BaseModel):
    task: TaskOut
    history: list[PublicationOut]


class BulkRetryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    publication_ids: list[str] = Field(alias="publicationIds", min_length=1, max_length=200)


class BulkRetryFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="taskId")
    error: str


class BulkRetryOut(BaseModel):
    retried: list[TaskOut]
    failed: list[BulkRetryFailure]
