from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IndicatorPeriodOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    period: str
    metrics: dict[str, int | float] = Field(default_factory=dict)
    deadline: datetime
    status: Literal["pending", "overdue", "submitted"]
    generated_at: datetime | None = Field(default=None, alias="generatedAt")
    submitted_at: datetime | None = Field(default=None, alias="submittedAt")
    overdue_flagged_at: datetime | None = Field(default=None, alias="overdueFlaggedAt")


class OverdueFlagOut(BaseModel):
    flagged: list[str]
