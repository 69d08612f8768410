"""Tests for the HTTP surface (health, readiness, metrics, cursors, on-demand runs)."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from analytics_ingest.api import health
from analytics_ingest.api.app import create_app
from analytics_ingest.bootstrap import IngestionService
from analytics_ingest.lock_manager import RedisLockManager
from analytics_ingest.models import AnalyticsAnomaly, AnomalySeverity, PipelineDefinition, PipelineResult
from analytics_ingest.observability import PipelineMetrics
from analytics_ingest.orchestrator import AnalyticsIngestionOrchestrator
from common.config import Settings

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
NAME = "test-pipeline"


@pytest.fixture
def runs():
    return []


@pytest.fixture
def service(engine, store, fake_redis, settings, tracer, runs):
    async def run(ctx):
        runs.append(ctx.window)
        return PipelineResult(pipeline=NAME, records_processed=0, duration_ms=0, next_cursor=ctx.window.end)

    metrics = PipelineMetrics()
    redis_conn = MagicMock()
    redis_conn.ping.return_value = True
    orchestrator = AnalyticsIngestionOrchestrator(
        store,
        RedisLockManager(fake_redis),
        settings,
        tracer=tracer,
        metrics=metrics,
        scheduler=MagicMock(),
        pipelines=[PipelineDefinition(NAME, "test pipeline", 300_000, run)],
        clock=lambda: NOW,
    )
    return IngestionService(
        settings=Settings(
            database_url="sqlite://", redis_url="redis://unused", redis_key_prefix="", analytics=settings,
        ),
        engine=engine,
        redis=redis_conn,
        store=store,
        metrics=metrics,
        orchestrator=orchestrator,
    )


@pytest.fixture
def client(service):
    with TestClient(create_app(service, start_orchestrator=False)) as c:
        yield c


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    def test_health(self, client):
        r = client.get("/health")

        assert r.status_code == 200
        assert r.json() == {"status": "ok"}

    def test_ready(self, client):
        r = client.get("/ready")

        assert r.status_code == 200
        assert r.json()["checks"] == {"database": True, "redis": True}

    def test_not_ready_when_redis_down(self, client, service):
        service.redis.ping.return_value = False

        r = client.get("/ready")

        assert r.status_code == 503
        assert r.json() == {"detail": "not ready"}

    def test_metrics_exposition(self, client, service):
        service.metrics.record(NAME, windows_processed=1, records_processed=2, duration_ms=5, telemetry_events=3)

        r = client.get("/metrics")

        assert r.status_code == 200
        assert 'analytics_ingestion_records_processed_total{pipeline="test-pipeline"} 2.0' in r.text


# =============================================================================
# Ingestion
# =============================================================================

class TestIngestion:

    def test_pipelines(self, client):
        r = client.get("/ingestion/pipelines")

        assert r.status_code == 200
        body = r.json()
        assert body["started"] is False
        assert body["pipelines"] == [
            {"name": NAME, "description": "test pipeline", "interval_ms": 300_000, "in_flight": False},
        ]

    def test_state_empty(self, client):
        assert client.get("/ingestion/state").json() == []

    def test_run_then_state(self, client, runs):
        r = client.post(f"/ingestion/{NAME}/run")

        assert r.status_code == 202
        assert r.json() == {"pipeline": NAME, "status": "accepted"}
        assert len(runs) == 1

        states = client.get("/ingestion/state").json()
        assert len(states) == 1
        assert states[0]["pipeline"] == NAME
        assert states[0]["in_flight"] is False
        assert datetime.fromisoformat(states[0]["last_processed_at"].replace("Z", "+00:00")) == NOW

    def test_unknown_pipeline_is_404(self, client):
        r = client.post("/ingestion/nope/run")

        assert r.status_code == 404
        assert r.json() == {"detail": "unknown pipeline: nope"}

    def test_in_flight_pipeline_is_409(self, client, service, runs):
        service.orchestrator._in_flight.add(NAME)

        r = client.post(f"/ingestion/{NAME}/run")

        assert r.status_code == 409
        assert runs == []

    def test_state_lists_existing_cursors(self, client, store):
        asyncio.run(store.create_ingestion_state("b", NOW - timedelta(hours=1)))
        asyncio.run(store.create_ingestion_state("a", NOW))

        states = client.get("/ingestion/state").json()

        assert [s["pipeline"] for s in states] == ["a", "b"]


class TestAnomalies:

    def _seed(self, store):
        asyncio.run(store.record_analytics_anomaly(
            AnalyticsAnomaly("planner", AnomalySeverity.WARNING, "old", NOW - timedelta(hours=1), {"k": 1})
        ))
        asyncio.run(store.record_analytics_anomaly(
            AnalyticsAnomaly("coder", AnomalySeverity.CRITICAL, "new", NOW)
        ))

    def test_list_newest_first(self, client, store):
        self._seed(store)

        r = client.get("/ingestion/anomalies")

        assert r.status_code == 200
        data = r.json()["data"]
        assert [a["description"] for a in data] == ["new", "old"]
        assert data[1]["metadata"] == {"k": 1}
        assert data[1]["severity"] == "warning"
        assert all(a["resolved"] is False for a in data)

    def test_list_filters(self, client, store):
        self._seed(store)

        r = client.get("/ingestion/anomalies", params={"source": "planner", "severity": "warning"})

        assert [a["description"] for a in r.json()["data"]] == ["old"]

    def test_resolve(self, client, store):
        self._seed(store)
        target = client.get("/ingestion/anomalies", params={"source": "coder"}).json()["data"][0]

        r = client.post(f"/ingestion/anomalies/{target['id']}/resolve")

        assert r.status_code == 200
        assert r.json()["id"] == target["id"]
        assert r.json()["resolved"] is True
        unresolved = client.get("/ingestion/anomalies", params={"resolved": "false"}).json()["data"]
        assert [a["description"] for a in unresolved] == ["old"]

    def test_resolve_unknown_is_404(self, client):
        r = client.post("/ingestion/anomalies/999/resolve")

        assert r.status_code == 404
        assert r.json() == {"detail": "unknown anomaly: 999"}

    def test_resolve_invalid_id_is_422(self, client):
        assert client.post("/ingestion/anomalies/0/resolve").status_code == 422
        assert client.post("/ingestion/anomalies/abc/resolve").status_code == 422


class TestServiceMissing:

    def test_503_without_service(self):
        app = FastAPI()
        app.include_router(health.router)

        with TestClient(app) as c:
            assert c.get("/ready").status_code == 503
