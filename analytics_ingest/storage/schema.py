"""DDL for the tables the ingestion service reads and writes.

Column types are kept to the subset both PostgreSQL and SQLite accept so the
same statements back production and the test suite. Migrations proper are
owned by the host application; ``ensure_schema`` only creates missing tables.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS telemetry_events (
        id BIGSERIAL PRIMARY KEY,
        event_type TEXT NOT NULL,
        payload JSON,
        occurred_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_telemetry_events_type_occurred
        ON telemetry_events (event_type, occurred_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_ingestion_state (
        pipeline TEXT PRIMARY KEY,
        last_processed_at TIMESTAMP WITH TIME ZONE NOT NULL,
        metadata JSON,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS quality_score_observations (
        agent_stage TEXT NOT NULL,
        occurred_at TIMESTAMP WITH TIME ZONE NOT NULL,
        score DOUBLE PRECISION NOT NULL,
        drivers JSON NOT NULL,
        metadata JSON,
        PRIMARY KEY (agent_stage, occurred_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_performance_metrics (
        agent_stage TEXT NOT NULL,
        window_start TIMESTAMP WITH TIME ZONE NOT NULL,
        window_end TIMESTAMP WITH TIME ZONE NOT NULL,
        tasks_processed INTEGER NOT NULL,
        avg_latency_ms INTEGER NOT NULL,
        success_rate DOUBLE PRECISION NOT NULL,
        fallback_rate DOUBLE PRECISION NOT NULL,
        human_hand_off_rate DOUBLE PRECISION NOT NULL,
        metadata JSON,
        PRIMARY KEY (agent_stage, window_start, window_end)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS repository_analytics_metrics (
        repository TEXT NOT NULL,
        branch TEXT NOT NULL DEFAULT '',
        window_start TIMESTAMP WITH TIME ZONE NOT NULL,
        window_end TIMESTAMP WITH TIME ZONE NOT NULL,
        commit_velocity INTEGER NOT NULL,
        refactor_hotspots JSON NOT NULL,
        coverage_drift DOUBLE PRECISION NOT NULL,
        metadata JSON,
        PRIMARY KEY (repository, branch, window_start, window_end)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_engagement_metrics (
        window_start TIMESTAMP WITH TIME ZONE NOT NULL,
        window_end TIMESTAMP WITH TIME ZONE NOT NULL,
        active_users INTEGER NOT NULL,
        collaboration_sessions INTEGER NOT NULL,
        avg_session_duration_sec DOUBLE PRECISION NOT NULL,
        feature_usage JSON NOT NULL,
        retention_cohorts JSON,
        metadata JSON,
        PRIMARY KEY (window_start, window_end)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS analytics_anomaly_events (
        id BIGSERIAL PRIMARY KEY,
        source TEXT NOT NULL,
        severity TEXT NOT NULL,
        occurred_at TIMESTAMP WITH TIME ZONE NOT NULL,
        description TEXT NOT NULL,
        metadata JSON,
        resolved BOOLEAN NOT NULL DEFAULT FALSE,
        UNIQUE (source, severity, occurred_at)
    )
    """,
)

# SQLite has no BIGSERIAL; an INTEGER PRIMARY KEY is its rowid alias.
_SQLITE_REPLACEMENTS = (("BIGSERIAL PRIMARY KEY", "INTEGER PRIMARY KEY"),)


def ensure_schema(engine: Engine) -> None:
    dialect = engine.dialect.name
    with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            if dialect == "sqlite":
                for old, new in _SQLITE_REPLACEMENTS:
                    statement = statement.replace(old, new)
            conn.execute(text(statement))
    logger.info("SCHEMA ensured dialect=%s statements=%d", dialect, len(SCHEMA_STATEMENTS))
