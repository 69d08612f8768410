"""Async facade over the SQL helpers.

SQLAlchemy calls are blocking, so every operation runs its own transaction
in the loop's default executor. Unexpected database errors surface as
``StorageError`` after the deadlock retry gives up.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StorageError
from ..models import (
    AgentPerformanceMetric,
    AnalyticsAnomaly,
    IngestionState,
    QualityScoreObservation,
    RepositoryAnalytics,
    StoredAnomaly,
    TelemetryEvent,
    UserEngagementMetric,
)
from . import queries
from .retry import run_in_transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AnalyticsStore:
    def __init__(self, engine: Engine, max_retries: int = 3):
        self._engine = engine
        self._max_retries = max_retries

    @property
    def engine(self) -> Engine:
        return self._engine

    async def _run(self, op: str, work: Callable[[Connection], T]) -> T:
        loop = asyncio.get_running_loop()
        call = functools.partial(run_in_transaction, self._engine, work, self._max_retries)
        try:
            return await loop.run_in_executor(None, call)
        except SQLAlchemyError as e:
            logger.error("STORE op_failed op=%s err=%s", op, e)
            raise StorageError(f"{op} failed: {e}") from e

    # ---- telemetry -------------------------------------------------------

    async def find_telemetry_events(
        self,
        event_types: Iterable[str],
        start: datetime,
        end: datetime,
        order_by_occurred_at: bool = False,
    ) -> List[TelemetryEvent]:
        types = list(event_types)
        return await self._run(
            "find_telemetry_events",
            lambda conn: queries.select_telemetry_events(conn, types, start, end, order_by_occurred_at),
        )

    async def add_telemetry_event(
        self,
        event_type: str,
        payload: Optional[Dict[str, Any]],
        occurred_at: datetime,
    ) -> None:
        await self._run(
            "add_telemetry_event",
            lambda conn: queries.insert_telemetry_event(conn, event_type, payload, occurred_at),
        )

    # ---- cursors ---------------------------------------------------------

    async def get_ingestion_state(self, pipeline: str) -> Optional[IngestionState]:
        return await self._run(
            "get_ingestion_state",
            lambda conn: queries.select_ingestion_state(conn, pipeline),
        )

    async def create_ingestion_state(
        self,
        pipeline: str,
        last_processed_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestionState:
        return await self._run(
            "create_ingestion_state",
            lambda conn: queries.insert_ingestion_state(conn, pipeline, last_processed_at, metadata),
        )

    async def update_ingestion_state(
        self,
        pipeline: str,
        last_processed_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IngestionState:
        return await self._run(
            "update_ingestion_state",
            lambda conn: queries.update_ingestion_state(conn, pipeline, last_processed_at, metadata),
        )

    async def list_ingestion_states(self) -> List[IngestionState]:
        return await self._run("list_ingestion_states", queries.select_ingestion_states)

    # ---- derived records -------------------------------------------------

    async def record_quality_score(self, observation: QualityScoreObservation) -> None:
        await self._run(
            "record_quality_score",
            lambda conn: queries.upsert_quality_score(conn, observation),
        )

    async def record_agent_performance(self, metric: AgentPerformanceMetric) -> None:
        await self._run(
            "record_agent_performance",
            lambda conn: queries.upsert_agent_performance(conn, metric),
        )

    async def record_repository_analytics(self, row: RepositoryAnalytics) -> None:
        await self._run(
            "record_repository_analytics",
            lambda conn: queries.upsert_repository_analytics(conn, row),
        )

    async def record_user_engagement(self, row: UserEngagementMetric) -> None:
        await self._run(
            "record_user_engagement",
            lambda conn: queries.upsert_user_engagement(conn, row),
        )

    async def record_analytics_anomaly(self, anomaly: AnalyticsAnomaly) -> None:
        await self._run(
            "record_analytics_anomaly",
            lambda conn: queries.upsert_analytics_anomaly(conn, anomaly),
        )

    async def list_analytics_anomalies(
        self,
        *,
        source: Optional[str] = None,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        limit: int = 200,
    ) -> List[StoredAnomaly]:
        return await self._run(
            "list_analytics_anomalies",
            lambda conn: queries.select_analytics_anomalies(
                conn, source=source, severity=severity, resolved=resolved, limit=limit,
            ),
        )

    async def resolve_analytics_anomaly(self, anomaly_id: int) -> Optional[StoredAnomaly]:
        return await self._run(
            "resolve_analytics_anomaly",
            lambda conn: queries.mark_anomaly_resolved(conn, anomaly_id),
        )

    # ---- read-back -------------------------------------------------------

    async def find_agent_performance_metrics(
        self,
        *,
        window_start_gte: Optional[datetime] = None,
        window_end_lte: Optional[datetime] = None,
        window_end_gte: Optional[datetime] = None,
        window_end_lt: Optional[datetime] = None,
    ) -> List[AgentPerformanceMetric]:
        return await self._run(
            "find_agent_performance_metrics",
            lambda conn: queries.select_agent_performance_metrics(
                conn,
                window_start_gte=window_start_gte,
                window_end_lte=window_end_lte,
                window_end_gte=window_end_gte,
                window_end_lt=window_end_lt,
            ),
        )

    async def find_quality_observations(
        self, start: datetime, end: datetime,
    ) -> List[QualityScoreObservation]:
        return await self._run(
            "find_quality_observations",
            lambda conn: queries.select_quality_observations(conn, start, end),
        )

    async def ping(self) -> bool:
        try:
            return await self._run("ping", queries.select_one)
        except StorageError:
            return False
