"""Tests for the repository analytics pipeline."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from analytics_ingest.pipelines.repository import (
    MAX_HOTSPOT_ENTRIES,
    create_repository_pipeline,
    normalize_hotspots,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
START = NOW - timedelta(hours=1)
MID = START + timedelta(minutes=30)


@pytest.fixture
def pipeline(settings):
    return create_repository_pipeline(settings)


class TestNormalizeHotspots:

    def test_trims_and_drops_blank_paths(self):
        assert normalize_hotspots({" src/a.py ": 3, "   ": 1}) == {"src/a.py": 3}

    @pytest.mark.parametrize("value", [None, [], "a.py", {}, {"  ": 1}])
    def test_nothing_usable_is_none(self, value):
        assert normalize_hotspots(value) is None

    def test_capped(self):
        hotspots = {f"f{i}.py": i for i in range(MAX_HOTSPOT_ENTRIES + 50)}

        assert len(normalize_hotspots(hotspots)) == MAX_HOTSPOT_ENTRIES


class TestRepositoryPipeline:

    @pytest.mark.asyncio
    async def test_empty_window(self, pipeline, make_context):
        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == ["No repository telemetry events detected in window"]
        assert result.next_cursor == NOW

    @pytest.mark.asyncio
    async def test_aggregates_per_repository(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_repository_analytics")
        await add_event(
            "repository.commit.activity",
            {"repository": "acme/api", "commitVelocity": 4, "refactorHotspots": {"a.py": 1}},
            MID,
        )
        await add_event(
            "repository.commit.activity",
            {"repository": "acme/api", "branch": "main", "commits": "6", "refactorHotspots": {"b.py": 2, "a.py": 5}},
            MID + timedelta(minutes=1),
        )
        await add_event("repository.coverage.snapshot", {"repository": "acme/api", "coverageDrift": 0.5}, MID)
        await add_event(
            "repository.coverage.snapshot",
            {"repository": "acme/api", "coverage": 80, "previousCoverage": 79},
            MID,
        )

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 1
        assert result.metadata["repositories"] == ["acme/api"]
        row = recorded[0]
        assert row.branch == "main"
        assert row.commit_velocity == 5
        assert row.coverage_drift == 0.75
        assert row.refactor_hotspots == {"a.py": 5, "b.py": 2}

    @pytest.mark.asyncio
    async def test_merged_hotspots_capped(self, pipeline, make_context, add_event, capture):
        recorded = capture("record_repository_analytics")
        first = {f"a{i}.py": i for i in range(80)}
        second = {f"b{i}.py": i for i in range(80)}
        await add_event("repository.analytics.snapshot", {"repository": "r", "refactorHotspots": first}, MID)
        await add_event(
            "repository.analytics.snapshot", {"repository": "r", "refactorHotspots": second},
            MID + timedelta(seconds=1),
        )

        await pipeline.run(make_context(START, NOW))

        assert len(recorded[0].refactor_hotspots) == MAX_HOTSPOT_ENTRIES

    @pytest.mark.asyncio
    async def test_negative_velocity_is_skipped(self, pipeline, make_context, add_event):
        await add_event("repository.commit.activity", {"repository": "broken", "commitVelocity": -3}, MID)

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == ["Repository broken produced invalid velocity. Skipping."]

    @pytest.mark.asyncio
    async def test_events_without_repository_are_ignored(self, pipeline, make_context, add_event):
        await add_event("repository.commit.activity", {"commits": 3}, MID)

        result = await pipeline.run(make_context(START, NOW))

        assert result.records_processed == 0
        assert result.warnings == []
        assert result.telemetry_events_scanned == 1

    @pytest.mark.asyncio
    async def test_branchless_rerun_keeps_one_row(self, pipeline, make_context, add_event, engine):
        await add_event("analytics.repository-metric", {"repository": "acme/web", "commits": 2}, MID)

        await pipeline.run(make_context(START, NOW))
        await pipeline.run(make_context(START, NOW))

        with engine.connect() as conn:
            rows = conn.execute(
                text("SELECT repository, branch, commit_velocity FROM repository_analytics_metrics")
            ).fetchall()
        assert [(r.repository, r.branch, r.commit_velocity) for r in rows] == [("acme/web", "", 2)]
