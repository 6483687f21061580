from typing import Literal

from pydantic import BaseModel, Field

from annuaire_api.schemas.tasks import TaskOut


class MutationRequest(BaseModel):
    entry_id: str = Field(min_length=1, max_length=128)
    entry_type: Literal["mailbox", "domain"]
    kind: Literal["created", "updated", "deleted"]


class MutationOut(BaseModel):
    entry_id: str
    action: Literal["created", "coalesced", "merged", "skipped"]
    operation: str | None = None
    task: TaskOut | None = None
