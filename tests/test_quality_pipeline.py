"""Tests for the quality score pipeline."""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from analytics_ingest.constants import AnalyticsPipelines
from analytics_ingest.pipelines.quality import compute_quality_score, create_quality_pipeline
from common.config import QualityScoreSettings

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
START = NOW - timedelta(hours=1)
MID = START + timedelta(minutes=30)


@pytest.fixture
def pipeline(settings):
    return create_quality_pipeline(settings)


# =============================================================================
# Score formula
# =============================================================================

class TestComputeQualityScore:

    def test_balanced_stage_at_baseline_latency(self):
        score = compute_quality_score(0.5, 1500, 0, 0, 0, QualityScoreSettings())

        assert score == 51.0

    def test_clamps_to_100(self):
        assert compute_quality_score(1.0, 3000, 0, 0, 0, QualityScoreSettings()) == 100.0

    def test_clamps_to_0(self):
        assert compute_quality_score(0.0, 0, 0, 0, 0, QualityScoreSettings()) == 0.0

    def test_nan_is_zero(self):
        assert compute_quality_score(float("nan"), 1500, 0, 0, 0, QualityScoreSettings()) == 0.0

    def test_rounded_to_two_decimals(self):
        score = compute_quality_score(0.7, 1234, 0.1, 0.05, 0.2, QualityScoreSettings())

        assert score == round(score, 2)
        assert 0 <= score <= 100

    def test_zero_baseline_latency_does_not_divide_by_zero(self):
        config = QualityScoreSettings(latency_baseline_ms=0)

        assert math.isfinite(compute_quality_score(0.5, 10, 0, 0, 0, config))


# =============================================================================
# Pipeline run
# =============================================================================

class TestQualityPipeline:

    def test_definition(self, pipeline, settings):
        assert pipeline.name == AnalyticsPipelines.QUALITY
        assert pipeline.interval_ms == settings.ingestion.interval_ms

    @pytest.mark.asyncio
    async def test_empty_window(self, pipeline, make_context):
        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == ["No telemetry events detected in window"]
        assert result.next_cursor == NOW
        assert result.telemetry_events_scanned == 0
        assert result.metadata == {"windowStart": "2026-01-15T11:00:00.000Z", "windowEnd": "2026-01-15T12:00:00.000Z"}

    @pytest.mark.asyncio
    async def test_success_and_failure(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_quality_score")
        await add_event("agent.task.completed", {"agentStage": "planner", "latencyMs": 1500}, MID)
        await add_event("agent.task.failed", {"agentStage": " planner ", "latencyMs": "1500"}, MID)

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 1
        assert result.telemetry_events_scanned == 2
        assert result.warnings == [
            "Stage planner has insufficient samples (2); quality score may be noisy."
        ]
        obs = recorded[0]
        assert obs.agent_stage == "planner"
        assert obs.score == 51.0
        assert obs.occurred_at == NOW
        assert obs.drivers["successRate"] == 0.5
        assert obs.drivers["avgLatencyMs"] == 1500
        assert obs.drivers["samples"] == 2

    @pytest.mark.asyncio
    async def test_confident_stage_has_no_warning(self, make_context, add_event, settings):
        analytics = replace(settings, quality_score=replace(settings.quality_score, confident_task_count=2))
        pipeline = create_quality_pipeline(analytics)
        await add_event("agent.task.completed", {"agentStage": "planner"}, MID)
        await add_event("agent.task.completed", {"agentStage": "planner"}, MID)

        result = await pipeline.run(make_context(START, NOW, analytics=analytics))

        assert result.warnings == []
        assert result.records_processed == 1

    @pytest.mark.asyncio
    async def test_flags_and_drivers(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_quality_score")
        await add_event(
            "analytics.quality-observation",
            {
                "agentStage": "coder",
                "status": "success",
                "fallback": True,
                "retryAttempt": 1,
                "drivers": {"lintErrors": 2, "review": "1.5", "label": "n/a"},
            },
            MID,
        )
        await add_event(
            "analytics.quality-observation",
            {"agentStage": "coder", "status": "failure", "humanHandOff": True, "drivers": {"lintErrors": 3}},
            MID,
        )

        await pipeline.run(make_context(START, NOW))

        drivers = recorded[0].drivers
        assert drivers["fallbackRate"] == 0.5
        assert drivers["humanHandOffRate"] == 0.5
        assert drivers["retryRate"] == 0.5
        assert drivers["lintErrors"] == 5.0
        assert drivers["review"] == 1.5
        assert "label" not in drivers
        # no latency samples: baseline latency is used
        assert drivers["avgLatencyMs"] == 1500

    @pytest.mark.asyncio
    async def test_events_without_stage_are_ignored(self, pipeline, make_context, add_event):
        await add_event("agent.task.completed", {"agentStage": "  "}, MID)
        await add_event("agent.task.completed", None, MID)

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == []
        assert result.telemetry_events_scanned == 2
        assert result.next_cursor == NOW

    @pytest.mark.asyncio
    async def test_events_outside_window_are_ignored(self, pipeline, make_context, add_event):
        await add_event("agent.task.completed", {"agentStage": "planner"}, NOW)
        await add_event("agent.task.completed", {"agentStage": "planner"}, START - timedelta(seconds=1))

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == ["No telemetry events detected in window"]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, pipeline, make_context, add_event, engine):
        await add_event("agent.task.completed", {"agentStage": "planner"}, MID)

        await pipeline.run(make_context(START, NOW))
        await pipeline.run(make_context(START, NOW))

        with engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM quality_score_observations")).scalar()
        assert count == 1

    @pytest.mark.asyncio
    async def test_span_is_ended(self, pipeline, make_context, tracer):
        await pipeline.run(make_context(START, NOW))

        span = tracer.start_span.return_value
        tracer.start_span.assert_called_once()
        assert tracer.start_span.call_args.args[0] == "analytics.pipeline.quality"
        span.end.assert_called_once()
