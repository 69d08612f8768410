"""Per-stage quality scores derived from task telemetry."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Dict, List

from common.config import AnalyticsSettings, QualityScoreSettings

from ..constants import AnalyticsPipelines, TelemetryEventTypes
from ..models import PipelineContext, PipelineDefinition, PipelineResult, QualityScoreObservation
from .shared import elapsed_ms, empty_result, payload_of, pipeline_span, to_number, trimmed, window_metadata

QUALITY_EVENT_TYPES = ("agent.task.completed", "agent.task.failed", TelemetryEventTypes.QUALITY)


@dataclass
class _StageAccumulator:
    total: int = 0
    successes: int = 0
    failures: int = 0
    latency_total: float = 0.0
    latency_samples: int = 0
    fallback_count: int = 0
    human_hand_off_count: int = 0
    retry_count: int = 0
    drivers: Dict[str, float] = field(default_factory=dict)


def _numeric_drivers(source) -> Dict[str, float]:
    if not isinstance(source, dict):
        return {}
    drivers = {}
    for key, value in source.items():
        number = to_number(value)
        if number is not None:
            drivers[key] = number
    return drivers


def compute_quality_score(
    success_rate: float,
    avg_latency_ms: float,
    fallback_rate: float,
    human_hand_off_rate: float,
    retry_rate: float,
    config: QualityScoreSettings,
) -> float:
    """Linear model over the stage rates, mapped onto 0..100 (2 decimals)."""
    baseline_latency = max(config.latency_baseline_ms, 1)
    latency_delta = (avg_latency_ms - baseline_latency) / baseline_latency
    failure_rate = 1 - success_rate
    w = config.weights

    raw = (
        config.base_intercept
        + w.success_rate * success_rate
        + w.failure_rate * failure_rate
        + w.latency * -latency_delta
        + w.fallback_rate * -fallback_rate
        + w.human_hand_off_rate * -human_hand_off_rate
        + w.retry_rate * -retry_rate
    )
    scaled = raw * 20 + 50
    if math.isnan(scaled):
        return 0.0
    return round(max(0.0, min(100.0, scaled)), 2)


class QualityPipeline:
    name = AnalyticsPipelines.QUALITY
    description = "Aggregates agent quality scores from telemetry events and persists derived metrics."

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        started = time.monotonic()
        with pipeline_span(ctx, "analytics.pipeline.quality", "Quality pipeline failed") as span:
            events = await ctx.store.find_telemetry_events(
                QUALITY_EVENT_TYPES, ctx.window.start, ctx.window.end,
            )
            if not events:
                return empty_result(
                    self.name, ctx, span, started,
                    warning="No telemetry events detected in window",
                    event="No quality telemetry in window",
                )

            by_stage: Dict[str, _StageAccumulator] = {}
            for event in events:
                payload = payload_of(event)
                stage = trimmed(payload.get("agentStage"))
                if not stage:
                    continue

                acc = by_stage.setdefault(stage, _StageAccumulator())
                acc.total += 1
                if payload.get("status") == "success" or event.event_type == "agent.task.completed":
                    acc.successes += 1
                if payload.get("status") == "failure" or event.event_type == "agent.task.failed":
                    acc.failures += 1

                latency = to_number(payload.get("latencyMs"))
                if latency is not None:
                    acc.latency_total += latency
                    acc.latency_samples += 1

                if payload.get("fallback"):
                    acc.fallback_count += 1
                if payload.get("humanHandOff"):
                    acc.human_hand_off_count += 1
                if payload.get("retryAttempt"):
                    acc.retry_count += 1

                for key, value in _numeric_drivers(payload.get("drivers")).items():
                    acc.drivers[key] = acc.drivers.get(key, 0.0) + value

            config = ctx.settings.quality_score
            warnings: List[str] = []
            records = 0
            for stage, acc in by_stage.items():
                if acc.total == 0:
                    warnings.append(f"Stage {stage} had zero total events; skipping")
                    continue
                if acc.successes + acc.failures < config.confident_task_count:
                    warnings.append(
                        f"Stage {stage} has insufficient samples ({acc.total}); quality score may be noisy."
                    )

                success_rate = acc.successes / acc.total
                avg_latency = (
                    acc.latency_total / acc.latency_samples
                    if acc.latency_samples > 0
                    else config.latency_baseline_ms
                )
                fallback_rate = acc.fallback_count / acc.total
                hand_off_rate = acc.human_hand_off_count / acc.total
                retry_rate = acc.retry_count / acc.total
                score = compute_quality_score(
                    success_rate, avg_latency, fallback_rate, hand_off_rate, retry_rate, config,
                )

                drivers = {
                    "successRate": success_rate,
                    "failureRate": 1 - success_rate,
                    "fallbackRate": fallback_rate,
                    "humanHandOffRate": hand_off_rate,
                    "retryRate": retry_rate,
                    "avgLatencyMs": avg_latency,
                    "samples": acc.total,
                    **acc.drivers,
                }
                await ctx.store.record_quality_score(QualityScoreObservation(
                    agent_stage=stage,
                    score=score,
                    drivers=drivers,
                    occurred_at=ctx.window.end,
                    metadata=window_metadata(ctx.window),
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
                metadata=window_metadata(ctx.window, telemetryEvents=len(events)),
                next_cursor=ctx.window.end,
                telemetry_events_scanned=len(events),
            )


def create_quality_pipeline(settings: AnalyticsSettings) -> PipelineDefinition:
    pipeline = QualityPipeline()
    return PipelineDefinition(
        name=pipeline.name,
        description=pipeline.description,
        interval_ms=settings.ingestion.interval_ms,
        run=pipeline.run,
    )
