from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _default_env_file() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("config_invalid_number name=%s value=%r default=%s", name, raw, default)
        return default
    # NaN / inf are treated as missing.
    if value != value or value in (float("inf"), float("-inf")):
        return default
    return value


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(frozen=True)
class IngestionSettings:
    interval_ms: int = 300_000
    window_minutes: int = 60
    timezone: str = "UTC"


@dataclass(frozen=True)
class QualityWeights:
    success_rate: float = 3.2
    failure_rate: float = -2.6
    latency: float = -0.9
    fallback_rate: float = -1.2
    human_hand_off_rate: float = -1.6
    retry_rate: float = -0.8


@dataclass(frozen=True)
class QualityScoreSettings:
    base_intercept: float = -0.25
    latency_baseline_ms: float = 1_500
    confident_task_count: int = 20
    weights: QualityWeights = field(default_factory=QualityWeights)


@dataclass(frozen=True)
class AnomalySettings:
    std_deviations: float = 2.5
    min_samples: int = 5
    critical_success_rate: float = 0.6
    warning_latency_factor: float = 1.5


@dataclass(frozen=True)
class AnalyticsSettings:
    ingestion: IngestionSettings = field(default_factory=IngestionSettings)
    quality_score: QualityScoreSettings = field(default_factory=QualityScoreSettings)
    anomalies: AnomalySettings = field(default_factory=AnomalySettings)


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str
    redis_key_prefix: str

    analytics: AnalyticsSettings


def get_analytics_settings() -> AnalyticsSettings:
    return AnalyticsSettings(
        ingestion=IngestionSettings(
            interval_ms=_env_int("ANALYTICS_INGEST_INTERVAL_MS", 300_000),
            window_minutes=_env_int("ANALYTICS_WINDOW_MINUTES", 60),
            timezone=os.getenv("ANALYTICS_SCHEDULER_TIMEZONE", "UTC"),
        ),
        quality_score=QualityScoreSettings(
            base_intercept=_env_float("ANALYTICS_QUALITY_BASE", -0.25),
            latency_baseline_ms=_env_float("ANALYTICS_QUALITY_LATENCY_BASELINE_MS", 1_500),
            confident_task_count=_env_int("ANALYTICS_QUALITY_CONFIDENT_TASKS", 20),
            weights=QualityWeights(
                success_rate=_env_float("ANALYTICS_QUALITY_WEIGHT_SUCCESS", 3.2),
                failure_rate=_env_float("ANALYTICS_QUALITY_WEIGHT_FAILURE", -2.6),
                latency=_env_float("ANALYTICS_QUALITY_WEIGHT_LATENCY", -0.9),
                fallback_rate=_env_float("ANALYTICS_QUALITY_WEIGHT_FALLBACK", -1.2),
                human_hand_off_rate=_env_float("ANALYTICS_QUALITY_WEIGHT_HANDOFF", -1.6),
                retry_rate=_env_float("ANALYTICS_QUALITY_WEIGHT_RETRY", -0.8),
            ),
        ),
        anomalies=AnomalySettings(
            std_deviations=_env_float("ANALYTICS_ANOMALY_STD_DEVIATIONS", 2.5),
            min_samples=_env_int("ANALYTICS_ANOMALY_MIN_SAMPLES", 5),
            critical_success_rate=_env_float("ANALYTICS_ANOMALY_CRITICAL_SUCCESS", 0.6),
            warning_latency_factor=_env_float("ANALYTICS_ANOMALY_LATENCY_FACTOR", 1.5),
        ),
    )


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("ANALYTICS_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        database_url=os.getenv(
            "DATABASE_URL", "postgresql+psycopg2://localhost:5432/analytics"
        ),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", ""),
        analytics=get_analytics_settings(),
    )
