from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class IngestionStateOut(BaseModel):
    pipeline: str
    last_processed_at: datetime
    updated_at: datetime
    metadata: Optional[Dict[str, Any]] = None
    in_flight: bool = False


class PipelineOut(BaseModel):
    name: str
    description: str
    interval_ms: int
    in_flight: bool = False


class IngestionOverview(BaseModel):
    started: bool
    pipelines: List[PipelineOut] = Field(default_factory=list)


class RunAccepted(BaseModel):
    pipeline: str
    status: str = "accepted"


class AnomalyOut(BaseModel):
    id: int
    source: str
    severity: str
    description: str
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None
    resolved: bool


class AnomalyList(BaseModel):
    data: List[AnomalyOut] = Field(default_factory=list)
