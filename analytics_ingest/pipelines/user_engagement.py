"""Global engagement aggregate: one UserEngagementMetric per window."""

from __future__ import annotations

import math
import time
from typing import Any, Dict, List, Set

from common.config import AnalyticsSettings

from ..constants import AnalyticsPipelines, TelemetryEventTypes
from ..models import PipelineContext, PipelineDefinition, PipelineResult, UserEngagementMetric
from .shared import elapsed_ms, empty_result, payload_of, pipeline_span, to_number, trimmed, window_metadata

USER_ENGAGEMENT_EVENT_TYPES = (
    "session.started",
    "session.ended",
    "collaboration.session.started",
    "collaboration.session.ended",
    "feature.used",
    TelemetryEventTypes.USER_ENGAGEMENT,
)

FEATURE_USAGE_CAP = 100
METADATA_SAMPLE_CAP = 25


class UserEngagementPipeline:
    name = AnalyticsPipelines.USER_ENGAGEMENT
    description = "Aggregates user engagement telemetry into UserEngagementMetric records."

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        started = time.monotonic()
        with pipeline_span(
            ctx, "analytics.pipeline.user-engagement", "User engagement pipeline failure",
        ) as span:
            events = await ctx.store.find_telemetry_events(
                USER_ENGAGEMENT_EVENT_TYPES, ctx.window.start, ctx.window.end, order_by_occurred_at=True,
            )
            if not events:
                return empty_result(
                    self.name, ctx, span, started,
                    warning="No engagement telemetry events detected in window",
                    event="No engagement telemetry in window",
                )

            users: Set[str] = set()
            collab_ids: Set[str] = set()
            explicit_active = 0.0
            explicit_collab = 0.0
            explicit_avg_duration = 0.0
            duration_total = 0.0
            duration_samples = 0
            session_count = 0
            feature_usage: Dict[str, float] = {}
            retention: Dict[str, int] = {}
            metadata_samples: List[Dict[str, Any]] = []

            for event in events:
                payload = payload_of(event)
                sample = payload.get("metadata")
                if sample and isinstance(sample, dict) and len(metadata_samples) < METADATA_SAMPLE_CAP:
                    metadata_samples.append(sample)

                # explicit aggregates: keep the max seen
                value = to_number(payload.get("activeUsers"))
                if value is not None:
                    explicit_active = max(explicit_active, value)
                value = to_number(payload.get("collaborationSessions"))
                if value is not None:
                    explicit_collab = max(explicit_collab, value)
                value = to_number(payload.get("avgSessionDurationSec"))
                if value is not None:
                    explicit_avg_duration = max(explicit_avg_duration, value)

                user_id = trimmed(payload.get("userId"))
                if user_id:
                    users.add(user_id)
                collab_id = trimmed(payload.get("collaborationSessionId"))
                if collab_id:
                    collab_ids.add(collab_id)

                if trimmed(payload.get("sessionId")):
                    session_count += 1
                    duration = to_number(payload.get("durationSec"))
                    if duration is not None:
                        duration_total += duration
                        duration_samples += 1

                usage = payload.get("featureUsage")
                if isinstance(usage, dict):
                    for feature, count in usage.items():
                        name = trimmed(feature)
                        amount = to_number(count) or 0.0
                        if not name or amount <= 0:
                            continue
                        feature_usage[name] = feature_usage.get(name, 0.0) + amount

                feature = trimmed(payload.get("feature"))
                if feature:
                    feature_usage[feature] = feature_usage.get(feature, 0.0) + 1

                cohort = trimmed(payload.get("retentionCohort"))
                if cohort:
                    retention[cohort] = retention.get(cohort, 0) + 1

            active_users = int(math.floor((explicit_active or len(users)) + 0.5))
            collaboration_sessions = int(math.floor((explicit_collab or len(collab_ids)) + 0.5))
            avg_duration = explicit_avg_duration or (
                duration_total / duration_samples if duration_samples > 0 else 0.0
            )
            capped_usage = {
                name: round(count, 2)
                for name, count in list(feature_usage.items())[:FEATURE_USAGE_CAP]
            }

            metadata = window_metadata(ctx.window, sessionCount=session_count)
            if metadata_samples:
                metadata["metadataSamples"] = metadata_samples

            await ctx.store.record_user_engagement(UserEngagementMetric(
                window_start=ctx.window.start,
                window_end=ctx.window.end,
                active_users=active_users,
                collaboration_sessions=collaboration_sessions,
                avg_session_duration_sec=round(avg_duration, 2),
                feature_usage=capped_usage,
                retention_cohorts=retention or None,
                metadata=metadata,
            ))

            duration_ms = elapsed_ms(started)
            span.set_attributes({
                "analytics.pipeline.records": 1,
                "analytics.pipeline.durationMs": duration_ms,
                "analytics.pipeline.telemetryEvents": len(events),
                "analytics.pipeline.activeUsers": active_users,
            })
            return PipelineResult(
                pipeline=self.name,
                records_processed=1,
                duration_ms=duration_ms,
                warnings=[],
                metadata=window_metadata(
                    ctx.window, activeUsers=active_users, collaborationSessions=collaboration_sessions,
                ),
                next_cursor=ctx.window.end,
                telemetry_events_scanned=len(events),
            )


def create_user_engagement_pipeline(settings: AnalyticsSettings) -> PipelineDefinition:
    pipeline = UserEngagementPipeline()
    return PipelineDefinition(
        name=pipeline.name,
        description=pipeline.description,
        interval_ms=settings.ingestion.interval_ms,
        run=pipeline.run,
    )
