"""Tests for the user engagement pipeline."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from analytics_ingest.pipelines.user_engagement import FEATURE_USAGE_CAP, create_user_engagement_pipeline

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
START = NOW - timedelta(hours=1)
MID = START + timedelta(minutes=30)


@pytest.fixture
def pipeline(settings):
    return create_user_engagement_pipeline(settings)


class TestUserEngagementPipeline:

    @pytest.mark.asyncio
    async def test_empty_window(self, pipeline, make_context, engine):
        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == ["No engagement telemetry events detected in window"]
        assert result.next_cursor == NOW
        with engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM user_engagement_metrics")).scalar() == 0

    @pytest.mark.asyncio
    async def test_inferred_from_ids(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_user_engagement")
        await add_event("session.started", {"userId": "u1", "sessionId": "s1", "durationSec": 30}, MID)
        await add_event(
            "session.ended",
            {"userId": "u2", "sessionId": "s2", "durationSec": "60", "collaborationSessionId": "c1"},
            MID,
        )
        await add_event("feature.used", {"userId": "u1", "feature": "chat", "retentionCohort": "2026-W02"}, MID)
        await add_event(
            "feature.used",
            {"featureUsage": {"chat": 2, "search": "3", " ": 5, "export": -1}},
            MID,
        )

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 1
        assert result.warnings == []
        assert result.metadata["activeUsers"] == 2
        row = recorded[0]
        assert row.active_users == 2
        assert row.collaboration_sessions == 1
        assert row.avg_session_duration_sec == 45.0
        assert row.feature_usage == {"chat": 3.0, "search": 3.0}
        assert row.retention_cohorts == {"2026-W02": 1}
        assert row.metadata["sessionCount"] == 2

    @pytest.mark.asyncio
    async def test_explicit_aggregates_take_the_max(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_user_engagement")
        await add_event(
            "analytics.user-engagement",
            {"activeUsers": 10, "collaborationSessions": "4", "avgSessionDurationSec": 120.254},
            MID,
        )
        await add_event("analytics.user-engagement", {"activeUsers": 7, "userId": "u9"}, MID)

        await pipeline.run(make_context(START, NOW))

        row = recorded[0]
        assert row.active_users == 10
        assert row.collaboration_sessions == 4
        assert row.avg_session_duration_sec == 120.25

    @pytest.mark.asyncio
    async def test_events_without_activity_still_write_one_record(
        self, pipeline, make_context, add_event, capture,
    ):
        recorded = capture("record_user_engagement")
        await add_event("session.started", {}, MID)
        await add_event("session.ended", None, MID)

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 1
        row = recorded[0]
        assert row.active_users == 0
        assert row.collaboration_sessions == 0
        assert row.avg_session_duration_sec == 0.0
        assert row.feature_usage == {}
        assert row.retention_cohorts is None

    @pytest.mark.asyncio
    async def test_feature_usage_capped(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_user_engagement")
        usage = {f"feature-{i}": 1 for i in range(FEATURE_USAGE_CAP + 20)}
        await add_event("feature.used", {"featureUsage": usage}, MID)

        await pipeline.run(make_context(START, NOW))

        assert len(recorded[0].feature_usage) == FEATURE_USAGE_CAP

    @pytest.mark.asyncio
    async def test_rerun_keeps_one_row(self, pipeline, make_context, add_event, engine):
        await add_event("session.started", {"userId": "u1"}, MID)

        await pipeline.run(make_context(START, NOW))
        await pipeline.run(make_context(START, NOW))

        with engine.connect() as conn:
            assert conn.execute(text("SELECT COUNT(*) FROM user_engagement_metrics")).scalar() == 1
