"""Repository-level commit velocity, refactor hotspots and coverage drift."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.config import AnalyticsSettings

from ..constants import AnalyticsPipelines, TelemetryEventTypes
from ..models import PipelineContext, PipelineDefinition, PipelineResult, RepositoryAnalytics
from .shared import elapsed_ms, empty_result, payload_of, pipeline_span, to_number, trimmed, window_metadata

REPOSITORY_EVENT_TYPES = (
    "repository.analytics.snapshot",
    "repository.commit.activity",
    "repository.coverage.snapshot",
    TelemetryEventTypes.REPOSITORY,
)

MAX_HOTSPOT_ENTRIES = 100
METADATA_SAMPLE_CAP = 50


@dataclass
class _RepositoryAccumulator:
    branch: Optional[str] = None
    commit_velocity: float = 0.0
    velocity_samples: int = 0
    refactor_hotspots: Optional[Dict[str, Any]] = None
    coverage_drift: float = 0.0
    coverage_samples: int = 0
    metadata_samples: List[Dict[str, Any]] = field(default_factory=list)


def normalize_hotspots(hotspots: Any) -> Optional[Dict[str, Any]]:
    """Trimmed, non-empty paths; at most MAX_HOTSPOT_ENTRIES from one event."""
    if not isinstance(hotspots, dict) or not hotspots:
        return None
    normalized: Dict[str, Any] = {}
    for path, data in hotspots.items():
        if len(normalized) >= MAX_HOTSPOT_ENTRIES:
            break
        key = trimmed(path)
        if key:
            normalized[key] = data
    return normalized or None


def _merge_hotspots(current: Optional[Dict[str, Any]], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(current or {})
    for path, data in incoming.items():
        if path in merged or len(merged) < MAX_HOTSPOT_ENTRIES:
            merged[path] = data
    return merged


def _first_number(payload: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        number = to_number(payload.get(key))
        if number is not None:
            return number
    return None


class RepositoryPipeline:
    name = AnalyticsPipelines.REPOSITORY
    description = "Aggregates repository-level analytics including commit velocity and refactor hotspots."

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        started = time.monotonic()
        with pipeline_span(
            ctx, "analytics.pipeline.repository", "Repository analytics pipeline failure",
        ) as span:
            events = await ctx.store.find_telemetry_events(
                REPOSITORY_EVENT_TYPES, ctx.window.start, ctx.window.end, order_by_occurred_at=True,
            )
            if not events:
                return empty_result(
                    self.name, ctx, span, started,
                    warning="No repository telemetry events detected in window",
                    event="No repository telemetry in window",
                )

            by_repo: Dict[str, _RepositoryAccumulator] = {}
            for event in events:
                payload = payload_of(event)
                repository = trimmed(payload.get("repository"))
                if not repository:
                    continue
                branch = trimmed(payload.get("branch")) or None

                acc = by_repo.get(repository)
                if acc is None:
                    acc = by_repo[repository] = _RepositoryAccumulator(branch=branch)
                if not acc.branch and branch:
                    acc.branch = branch

                velocity = _first_number(payload, "commitVelocity", "commitsPerDay", "commits")
                if velocity is not None:
                    acc.commit_velocity += velocity
                    acc.velocity_samples += 1

                hotspots = normalize_hotspots(payload.get("refactorHotspots"))
                if hotspots:
                    acc.refactor_hotspots = _merge_hotspots(acc.refactor_hotspots, hotspots)

                explicit_drift = to_number(payload.get("coverageDrift"))
                coverage = to_number(payload.get("coverage"))
                previous = to_number(payload.get("previousCoverage"))
                if explicit_drift is not None:
                    acc.coverage_drift += explicit_drift
                    acc.coverage_samples += 1
                elif coverage is not None and previous is not None:
                    acc.coverage_drift += coverage - previous
                    acc.coverage_samples += 1

                sample = payload.get("metadata")
                if sample and isinstance(sample, dict) and len(acc.metadata_samples) < METADATA_SAMPLE_CAP:
                    acc.metadata_samples.append(sample)

            warnings: List[str] = []
            records = 0
            for repository, acc in by_repo.items():
                velocity = (
                    acc.commit_velocity / acc.velocity_samples if acc.velocity_samples > 0 else acc.commit_velocity
                )
                drift = (
                    acc.coverage_drift / acc.coverage_samples if acc.coverage_samples > 0 else acc.coverage_drift
                )
                if not math.isfinite(velocity) or velocity < 0:
                    warnings.append(f"Repository {repository} produced invalid velocity. Skipping.")
                    continue

                metadata = window_metadata(ctx.window)
                if acc.metadata_samples:
                    metadata["samples"] = acc.metadata_samples

                await ctx.store.record_repository_analytics(RepositoryAnalytics(
                    repository=repository,
                    branch=acc.branch,
                    window_start=ctx.window.start,
                    window_end=ctx.window.end,
                    commit_velocity=int(math.floor(velocity + 0.5)),
                    refactor_hotspots=acc.refactor_hotspots or {},
                    coverage_drift=round(drift, 3),
                    metadata=metadata,
                ))
                records += 1

            duration_ms = elapsed_ms(started)
            span.set_attributes({
                "analytics.pipeline.records": records,
                "analytics.pipeline.durationMs": duration_ms,
                "analytics.pipeline.telemetryEvents": len(events),
            })
            return PipelineResult(
                pipeline=self.name,
                records_processed=records,
                duration_ms=duration_ms,
                warnings=warnings,
                metadata=window_metadata(ctx.window, repositories=list(by_repo)),
                next_cursor=ctx.window.end,
                telemetry_events_scanned=len(events),
            )


def create_repository_pipeline(settings: AnalyticsSettings) -> PipelineDefinition:
    pipeline = RepositoryPipeline()
    return PipelineDefinition(
        name=pipeline.name,
        description=pipeline.description,
        interval_ms=settings.ingestion.interval_ms,
        run=pipeline.run,
    )
