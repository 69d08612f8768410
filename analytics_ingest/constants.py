"""Pipeline names, telemetry event types and orchestration limits."""

from __future__ import annotations


class AnalyticsPipelines:
    QUALITY = "analytics-quality"
    AGENT_PERFORMANCE = "analytics-agent-performance"
    USER_ENGAGEMENT = "analytics-user-engagement"
    REPOSITORY = "analytics-repository"
    ANOMALIES = "analytics-anomalies"


class TelemetryEventTypes:
    QUALITY = "analytics.quality-observation"
    AGENT_PERFORMANCE = "analytics.agent-performance"
    USER_ENGAGEMENT = "analytics.user-engagement"
    REPOSITORY = "analytics.repository-metric"
    ANOMALIES = "analytics.anomaly"


MAX_WINDOWS_PER_TICK = 12

# Lock TTL = max(interval * grace, min_ttl)
LOCK_GRACE_FACTOR = 2
LOCK_MIN_TTL_MS = 60_000
LOCK_KEY_PREFIX = "analytics:ingestion:"

CRON_FALLBACK = "*/30 * * * * *"  # every 30 seconds
