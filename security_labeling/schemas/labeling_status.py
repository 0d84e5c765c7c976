from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field


class ValueSetSummary(BaseModel):
    id: str
    date: str | None = None


class LabelingStatusResponse(BaseModel):
    valueSets: List[ValueSetSummary] = Field(default_factory=list)
    rulesCount: int = 0
    codesCount: int = 0
    earliestDate: str | None = None
    tableVersion: int = 0
    stats: Dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


class ClearDataResponse(BaseModel):
    message: str
