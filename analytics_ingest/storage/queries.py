"""SQL helper functions for the analytics store.

All database queries are centralized here. No business logic.
Every helper takes an open connection; transactions are owned by the caller.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, bindparam, text

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

_TS = DateTime(timezone=True)
_JSON = JSON(none_as_null=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ts(name: str):
    return bindparam(name, type_=_TS)


def _json(name: str):
    return bindparam(name, type_=_JSON)


# --------------------------------------------------------------------------
# Telemetry
# --------------------------------------------------------------------------

def select_telemetry_events(
    conn,
    event_types: Iterable[str],
    start: datetime,
    end: datetime,
    order_by_occurred_at: bool = False,
) -> List[TelemetryEvent]:
    types = list(event_types)
    if not types:
        return []
    sql = """
        SELECT event_type, payload, occurred_at
        FROM telemetry_events
        WHERE event_type IN :event_types
          AND occurred_at >= :start
          AND occurred_at < :end
    """
    if order_by_occurred_at:
        sql += " ORDER BY occurred_at ASC, id ASC"
    stmt = (
        text(sql)
        .bindparams(bindparam("event_types", expanding=True), _ts("start"), _ts("end"))
        .columns(event_type=String, payload=_JSON, occurred_at=_TS)
    )
    rows = conn.execute(
        stmt,
        {"event_types": types, "start": as_utc(start), "end": as_utc(end)},
    ).fetchall()
    return [
        TelemetryEvent(event_type=r.event_type, payload=r.payload, occurred_at=as_utc(r.occurred_at))
        for r in rows
    ]


def insert_telemetry_event(conn, event_type: str, payload: Optional[Dict[str, Any]], occurred_at: datetime) -> None:
    conn.execute(
        text(
            """
            INSERT INTO telemetry_events (event_type, payload, occurred_at)
            VALUES (:event_type, :payload, :occurred_at)
            """
        ).bindparams(_json("payload"), _ts("occurred_at")),
        {"event_type": event_type, "payload": payload, "occurred_at": as_utc(occurred_at)},
    )


# --------------------------------------------------------------------------
# Ingestion state (cursors)
# --------------------------------------------------------------------------

_STATE_COLUMNS = dict(pipeline=String, last_processed_at=_TS, metadata=_JSON, updated_at=_TS)


def _state_from_row(row) -> IngestionState:
    return IngestionState(
        pipeline=row.pipeline,
        last_processed_at=as_utc(row.last_processed_at),
        metadata=row.metadata,
        updated_at=as_utc(row.updated_at),
    )


def select_ingestion_state(conn, pipeline: str) -> Optional[IngestionState]:
    row = conn.execute(
        text(
            """
            SELECT pipeline, last_processed_at, metadata, updated_at
            FROM analytics_ingestion_state
            WHERE pipeline = :pipeline
            """
        ).columns(**_STATE_COLUMNS),
        {"pipeline": pipeline},
    ).fetchone()
    if not row:
        return None
    return _state_from_row(row)


def select_ingestion_states(conn) -> List[IngestionState]:
    rows = conn.execute(
        text(
            """
            SELECT pipeline, last_processed_at, metadata, updated_at
            FROM analytics_ingestion_state
            ORDER BY pipeline
            """
        ).columns(**_STATE_COLUMNS)
    ).fetchall()
    return [_state_from_row(r) for r in rows]


def insert_ingestion_state(
    conn,
    pipeline: str,
    last_processed_at: datetime,
    metadata: Optional[Dict[str, Any]],
) -> IngestionState:
    now = utc_now()
    conn.execute(
        text(
            """
            INSERT INTO analytics_ingestion_state (pipeline, last_processed_at, metadata, updated_at)
            VALUES (:pipeline, :last_processed_at, :metadata, :updated_at)
            """
        ).bindparams(_ts("last_processed_at"), _json("metadata"), _ts("updated_at")),
        {
            "pipeline": pipeline,
            "last_processed_at": as_utc(last_processed_at),
            "metadata": metadata,
            "updated_at": now,
        },
    )
    return IngestionState(
        pipeline=pipeline,
        last_processed_at=as_utc(last_processed_at),
        metadata=metadata,
        updated_at=now,
    )


def update_ingestion_state(
    conn,
    pipeline: str,
    last_processed_at: datetime,
    metadata: Optional[Dict[str, Any]],
) -> IngestionState:
    now = utc_now()
    result = conn.execute(
        text(
            """
            UPDATE analytics_ingestion_state
            SET last_processed_at = :last_processed_at,
                metadata = :metadata,
                updated_at = :updated_at
            WHERE pipeline = :pipeline
            """
        ).bindparams(_ts("last_processed_at"), _json("metadata"), _ts("updated_at")),
        {
            "pipeline": pipeline,
            "last_processed_at": as_utc(last_processed_at),
            "metadata": metadata,
            "updated_at": now,
        },
    )
    if result.rowcount == 0:
        raise LookupError(f"ingestion state not found: {pipeline}")
    return IngestionState(
        pipeline=pipeline,
        last_processed_at=as_utc(last_processed_at),
        metadata=metadata,
        updated_at=now,
    )


# --------------------------------------------------------------------------
# Derived records (upserts on natural keys)
# --------------------------------------------------------------------------

def upsert_quality_score(conn, obs: QualityScoreObservation) -> None:
    conn.execute(
        text(
            """
            INSERT INTO quality_score_observations
                (agent_stage, occurred_at, score, drivers, metadata)
            VALUES (:agent_stage, :occurred_at, :score, :drivers, :metadata)
            ON CONFLICT (agent_stage, occurred_at) DO UPDATE SET
                score = excluded.score,
                drivers = excluded.drivers,
                metadata = excluded.metadata
            """
        ).bindparams(_ts("occurred_at"), _json("drivers"), _json("metadata")),
        {
            "agent_stage": obs.agent_stage,
            "occurred_at": as_utc(obs.occurred_at),
            "score": float(obs.score),
            "drivers": obs.drivers,
            "metadata": obs.metadata,
        },
    )


def upsert_agent_performance(conn, metric: AgentPerformanceMetric) -> None:
    conn.execute(
        text(
            """
            INSERT INTO agent_performance_metrics
                (agent_stage, window_start, window_end, tasks_processed, avg_latency_ms,
                 success_rate, fallback_rate, human_hand_off_rate, metadata)
            VALUES (:agent_stage, :window_start, :window_end, :tasks_processed, :avg_latency_ms,
                    :success_rate, :fallback_rate, :human_hand_off_rate, :metadata)
            ON CONFLICT (agent_stage, window_start, window_end) DO UPDATE SET
                tasks_processed = excluded.tasks_processed,
                avg_latency_ms = excluded.avg_latency_ms,
                success_rate = excluded.success_rate,
                fallback_rate = excluded.fallback_rate,
                human_hand_off_rate = excluded.human_hand_off_rate,
                metadata = excluded.metadata
            """
        ).bindparams(_ts("window_start"), _ts("window_end"), _json("metadata")),
        {
            "agent_stage": metric.agent_stage,
            "window_start": as_utc(metric.window_start),
            "window_end": as_utc(metric.window_end),
            "tasks_processed": int(metric.tasks_processed),
            "avg_latency_ms": int(metric.avg_latency_ms),
            "success_rate": float(metric.success_rate),
            "fallback_rate": float(metric.fallback_rate),
            "human_hand_off_rate": float(metric.human_hand_off_rate),
            "metadata": metric.metadata,
        },
    )


def upsert_repository_analytics(conn, row: RepositoryAnalytics) -> None:
    conn.execute(
        text(
            """
            INSERT INTO repository_analytics_metrics
                (repository, branch, window_start, window_end, commit_velocity,
                 refactor_hotspots, coverage_drift, metadata)
            VALUES (:repository, :branch, :window_start, :window_end, :commit_velocity,
                    :refactor_hotspots, :coverage_drift, :metadata)
            ON CONFLICT (repository, branch, window_start, window_end) DO UPDATE SET
                commit_velocity = excluded.commit_velocity,
                refactor_hotspots = excluded.refactor_hotspots,
                coverage_drift = excluded.coverage_drift,
                metadata = excluded.metadata
            """
        ).bindparams(
            _ts("window_start"), _ts("window_end"), _json("refactor_hotspots"), _json("metadata"),
        ),
        {
            "repository": row.repository,
            # NULL never matches in a unique key, so "no branch" is stored as ''
            "branch": row.branch or "",
            "window_start": as_utc(row.window_start),
            "window_end": as_utc(row.window_end),
            "commit_velocity": int(row.commit_velocity),
            "refactor_hotspots": row.refactor_hotspots,
            "coverage_drift": float(row.coverage_drift),
            "metadata": row.metadata,
        },
    )


def upsert_user_engagement(conn, row: UserEngagementMetric) -> None:
    conn.execute(
        text(
            """
            INSERT INTO user_engagement_metrics
                (window_start, window_end, active_users, collaboration_sessions,
                 avg_session_duration_sec, feature_usage, retention_cohorts, metadata)
            VALUES (:window_start, :window_end, :active_users, :collaboration_sessions,
                    :avg_session_duration_sec, :feature_usage, :retention_cohorts, :metadata)
            ON CONFLICT (window_start, window_end) DO UPDATE SET
                active_users = excluded.active_users,
                collaboration_sessions = excluded.collaboration_sessions,
                avg_session_duration_sec = excluded.avg_session_duration_sec,
                feature_usage = excluded.feature_usage,
                retention_cohorts = excluded.retention_cohorts,
                metadata = excluded.metadata
            """
        ).bindparams(
            _ts("window_start"), _ts("window_end"),
            _json("feature_usage"), _json("retention_cohorts"), _json("metadata"),
        ),
        {
            "window_start": as_utc(row.window_start),
            "window_end": as_utc(row.window_end),
            "active_users": int(row.active_users),
            "collaboration_sessions": int(row.collaboration_sessions),
            "avg_session_duration_sec": float(row.avg_session_duration_sec),
            "feature_usage": row.feature_usage,
            "retention_cohorts": row.retention_cohorts,
            "metadata": row.metadata,
        },
    )


def upsert_analytics_anomaly(conn, anomaly: AnalyticsAnomaly) -> None:
    conn.execute(
        text(
            """
            INSERT INTO analytics_anomaly_events
                (source, severity, occurred_at, description, metadata, resolved)
            VALUES (:source, :severity, :occurred_at, :description, :metadata, FALSE)
            ON CONFLICT (source, severity, occurred_at) DO UPDATE SET
                description = excluded.description,
                metadata = excluded.metadata,
                resolved = FALSE
            """
        ).bindparams(_ts("occurred_at"), _json("metadata")),
        {
            "source": anomaly.source,
            "severity": getattr(anomaly.severity, "value", anomaly.severity),
            "occurred_at": as_utc(anomaly.occurred_at),
            "description": anomaly.description,
            "metadata": anomaly.metadata,
        },
    )


_ANOMALY_COLUMNS = dict(
    id=Integer,
    source=String,
    severity=String,
    description=String,
    occurred_at=_TS,
    metadata=_JSON,
    resolved=Boolean,
)

_ANOMALY_SELECT = """
    SELECT id, source, severity, description, occurred_at, metadata, resolved
    FROM analytics_anomaly_events
"""


def _anomaly_from_row(row) -> StoredAnomaly:
    return StoredAnomaly(
        id=int(row.id),
        source=row.source,
        severity=row.severity,
        description=row.description,
        occurred_at=as_utc(row.occurred_at),
        metadata=row.metadata,
        resolved=bool(row.resolved),
    )


def select_analytics_anomalies(
    conn,
    *,
    source: Optional[str] = None,
    severity: Optional[str] = None,
    resolved: Optional[bool] = None,
    limit: int = 200,
) -> List[StoredAnomaly]:
    """Newest first; every filter left as None is ignored."""
    clauses = []
    binds = [bindparam("limit", type_=Integer)]
    params: Dict[str, Any] = {"limit": int(limit)}
    if source:
        clauses.append("source = :source")
        params["source"] = source
    if severity:
        clauses.append("severity = :severity")
        params["severity"] = severity
    if resolved is not None:
        clauses.append("resolved = :resolved")
        binds.append(bindparam("resolved", type_=Boolean))
        params["resolved"] = resolved

    sql = _ANOMALY_SELECT
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY occurred_at DESC, id DESC LIMIT :limit"

    stmt = text(sql).bindparams(*binds).columns(**_ANOMALY_COLUMNS)
    return [_anomaly_from_row(r) for r in conn.execute(stmt, params).fetchall()]


def mark_anomaly_resolved(conn, anomaly_id: int) -> Optional[StoredAnomaly]:
    """Set ``resolved``; returns the updated row, or None when the id is unknown."""
    result = conn.execute(
        text("UPDATE analytics_anomaly_events SET resolved = TRUE WHERE id = :id"),
        {"id": int(anomaly_id)},
    )
    if result.rowcount == 0:
        return None
    row = conn.execute(
        text(_ANOMALY_SELECT + " WHERE id = :id").columns(**_ANOMALY_COLUMNS),
        {"id": int(anomaly_id)},
    ).fetchone()
    return _anomaly_from_row(row)


# --------------------------------------------------------------------------
# Read-back for anomaly detection
# --------------------------------------------------------------------------

def select_agent_performance_metrics(
    conn,
    *,
    window_start_gte: Optional[datetime] = None,
    window_end_lte: Optional[datetime] = None,
    window_end_gte: Optional[datetime] = None,
    window_end_lt: Optional[datetime] = None,
) -> List[AgentPerformanceMetric]:
    filters = (
        ("window_start_gte", "window_start >= :window_start_gte", window_start_gte),
        ("window_end_lte", "window_end <= :window_end_lte", window_end_lte),
        ("window_end_gte", "window_end >= :window_end_gte", window_end_gte),
        ("window_end_lt", "window_end < :window_end_lt", window_end_lt),
    )
    clauses = []
    binds = []
    params: Dict[str, Any] = {}
    for name, clause, value in filters:
        if value is None:
            continue
        clauses.append(clause)
        binds.append(_ts(name))
        params[name] = as_utc(value)

    sql = """
        SELECT agent_stage, window_start, window_end, tasks_processed, avg_latency_ms,
               success_rate, fallback_rate, human_hand_off_rate, metadata
        FROM agent_performance_metrics
    """
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY window_start ASC, agent_stage ASC"

    stmt = text(sql)
    if binds:
        stmt = stmt.bindparams(*binds)
    stmt = stmt.columns(
        agent_stage=String,
        window_start=_TS,
        window_end=_TS,
        tasks_processed=Integer,
        avg_latency_ms=Integer,
        success_rate=Float,
        fallback_rate=Float,
        human_hand_off_rate=Float,
        metadata=_JSON,
    )
    rows = conn.execute(stmt, params).fetchall()
    return [
        AgentPerformanceMetric(
            agent_stage=r.agent_stage,
            window_start=as_utc(r.window_start),
            window_end=as_utc(r.window_end),
            tasks_processed=int(r.tasks_processed),
            avg_latency_ms=int(r.avg_latency_ms),
            success_rate=float(r.success_rate),
            fallback_rate=float(r.fallback_rate),
            human_hand_off_rate=float(r.human_hand_off_rate),
            metadata=r.metadata,
        )
        for r in rows
    ]


def select_quality_observations(conn, start: datetime, end: datetime) -> List[QualityScoreObservation]:
    rows = conn.execute(
        text(
            """
            SELECT agent_stage, score, drivers, occurred_at, metadata
            FROM quality_score_observations
            WHERE occurred_at >= :start AND occurred_at < :end
            ORDER BY occurred_at ASC, agent_stage ASC
            """
        )
        .bindparams(_ts("start"), _ts("end"))
        .columns(agent_stage=String, score=Float, drivers=_JSON, occurred_at=_TS, metadata=_JSON),
        {"start": as_utc(start), "end": as_utc(end)},
    ).fetchall()
    return [
        QualityScoreObservation(
            agent_stage=r.agent_stage,
            score=float(r.score),
            drivers=r.drivers or {},
            occurred_at=as_utc(r.occurred_at),
            metadata=r.metadata,
        )
        for r in rows
    ]


def select_one(conn) -> bool:
    return conn.execute(text("SELECT 1")).scalar() == 1
