"""Domain models shared by the orchestrator, the pipelines and the store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from opentelemetry.trace import Span, Tracer

from common.config import AnalyticsSettings

if TYPE_CHECKING:
    from .shared_state import SharedState
    from .storage.store import AnalyticsStore


@dataclass(frozen=True)
class TelemetryEvent:
    """Raw, append-only telemetry event. Read-only for this service."""

    event_type: str
    payload: Optional[Dict[str, Any]]
    occurred_at: datetime


@dataclass(frozen=True)
class IngestionState:
    """Persisted cursor of one pipeline."""

    pipeline: str
    last_processed_at: datetime
    metadata: Optional[Dict[str, Any]]
    updated_at: datetime


@dataclass(frozen=True)
class PipelineWindow:
    """Half-open interval [start, end) plus the cursor snapshot it was built from."""

    start: datetime
    end: datetime
    state: IngestionState


@dataclass
class PipelineResult:
    pipeline: str
    records_processed: int
    duration_ms: int
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    next_cursor: Optional[datetime] = None
    telemetry_events_scanned: int = 0


class AnomalySeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class QualityScoreObservation:
    agent_stage: str
    score: float
    drivers: Dict[str, float]
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class AgentPerformanceMetric:
    agent_stage: str
    window_start: datetime
    window_end: datetime
    tasks_processed: int
    avg_latency_ms: int
    success_rate: float
    fallback_rate: float
    human_hand_off_rate: float
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RepositoryAnalytics:
    repository: str
    branch: Optional[str]
    window_start: datetime
    window_end: datetime
    commit_velocity: int
    refactor_hotspots: Dict[str, Any]
    coverage_drift: float
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class UserEngagementMetric:
    window_start: datetime
    window_end: datetime
    active_users: int
    collaboration_sessions: int
    avg_session_duration_sec: float
    feature_usage: Dict[str, float]
    retention_cohorts: Optional[Dict[str, int]] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class AnalyticsAnomaly:
    source: str
    severity: AnomalySeverity
    description: str
    occurred_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredAnomaly:
    """An anomaly row as persisted, with its id and resolution flag."""

    id: int
    source: str
    severity: str
    description: str
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]]
    resolved: bool


@dataclass
class PipelineContext:
    """Everything a pipeline run may touch."""

    store: "AnalyticsStore"
    settings: AnalyticsSettings
    logger: logging.Logger
    tracer: Tracer
    span: Span
    window: PipelineWindow
    shared: "SharedState"
    redis: Any = None


PipelineRun = Callable[[PipelineContext], Awaitable[PipelineResult]]


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    description: str
    interval_ms: int
    run: PipelineRun
