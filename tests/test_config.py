import os
from unittest.mock import patch

from common.config import AnalyticsSettings, get_analytics_settings, get_settings


class TestAnalyticsSettings:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            s = get_analytics_settings()

        assert s == AnalyticsSettings()
        assert s.ingestion.interval_ms == 300_000
        assert s.ingestion.window_minutes == 60
        assert s.quality_score.base_intercept == -0.25
        assert s.quality_score.latency_baseline_ms == 1500
        assert s.quality_score.confident_task_count == 20
        assert s.quality_score.weights.success_rate == 3.2
        assert s.quality_score.weights.retry_rate == -0.8
        assert s.anomalies.std_deviations == 2.5
        assert s.anomalies.min_samples == 5
        assert s.anomalies.critical_success_rate == 0.6
        assert s.anomalies.warning_latency_factor == 1.5

    def test_env_overrides(self):
        env = {
            "ANALYTICS_INGEST_INTERVAL_MS": "60000",
            "ANALYTICS_WINDOW_MINUTES": "15",
            "ANALYTICS_ANOMALY_STD_DEVIATIONS": "3",
            "ANALYTICS_QUALITY_WEIGHT_LATENCY": "-1.5",
        }
        with patch.dict(os.environ, env, clear=True):
            s = get_analytics_settings()

        assert s.ingestion.interval_ms == 60_000
        assert s.ingestion.window_minutes == 15
        assert s.anomalies.std_deviations == 3.0
        assert s.quality_score.weights.latency == -1.5

    def test_invalid_numbers_fall_back(self, caplog):
        env = {
            "ANALYTICS_INGEST_INTERVAL_MS": "soon",
            "ANALYTICS_ANOMALY_MIN_SAMPLES": "nan",
        }
        with patch.dict(os.environ, env, clear=True):
            s = get_analytics_settings()

        assert s.ingestion.interval_ms == 300_000
        assert s.anomalies.min_samples == 5
        assert "config_invalid_number" in caplog.text


class TestSettings:

    def test_env_file_does_not_override_real_env(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "REDIS_URL=redis://from-file:6379/1\n"
            "DATABASE_URL=sqlite:///from-file.db\n"
        )
        env = {
            "ANALYTICS_ENV_FILE": str(env_file),
            "REDIS_URL": "redis://from-env:6379/0",
        }
        with patch.dict(os.environ, env, clear=True):
            s = get_settings()

        assert s.redis_url == "redis://from-env:6379/0"
        assert s.database_url == "sqlite:///from-file.db"

    def test_missing_env_file_is_ignored(self, tmp_path):
        env = {"ANALYTICS_ENV_FILE": str(tmp_path / "absent.env")}
        with patch.dict(os.environ, env, clear=True):
            s = get_settings()

        assert s.redis_url == "redis://localhost:6379/0"
        assert s.redis_key_prefix == ""
