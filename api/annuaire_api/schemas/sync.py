from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SyncStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    last_sync: datetime | None = Field(default=None, alias="lastSync")
    next_sync: datetime = Field(alias="nextSync")
    status: Literal["idle", "running", "completed", "failed"]
    synced_count: int = Field(alias="syncedCount")


class SyncRunOut(BaseModel):
    id: str
    trigger: str
    status: Literal["running", "completed", "failed"]
    started_at: datetime
    finished_at: datetime | None = None
    scanned_count: int = 0
    divergent_count: int = 0
    enqueued_count: int = 0
    error: str | None = None


class ReconcileTriggerOut(BaseModel):
    started: bool
    run: SyncRunOut | None = None
