"""Per-stage throughput, latency, fallback and hand-off rates."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.config import AnalyticsSettings

from ..constants import AnalyticsPipelines, TelemetryEventTypes
from ..models import AgentPerformanceMetric, PipelineContext, PipelineDefinition, PipelineResult
from .shared import elapsed_ms, empty_result, payload_of, pipeline_span, to_number, window_metadata

PERFORMANCE_EVENT_TYPES = (
    "agent.task.completed",
    "agent.task.failed",
    "agent.stage.completed",
    "agent.stage.failed",
    TelemetryEventTypes.AGENT_PERFORMANCE,
)

METADATA_SAMPLE_CAP = 25

_STAGE_KEYS = ("agentStage", "stageId", "stageName", "stage")


@dataclass
class _StageAccumulator:
    tasks_processed: int = 0
    successes: int = 0
    failures: int = 0
    latency_total: float = 0.0
    latency_samples: int = 0
    latency_max: float = 0.0
    latency_min: float = math.inf
    fallback_count: int = 0
    human_hand_off_count: int = 0
    retry_count: float = 0.0
    metadata_samples: List[Dict[str, Any]] = field(default_factory=list)


def derive_stage_key(payload: Dict[str, Any]) -> Optional[str]:
    """First present stage field wins, even when it trims to nothing."""
    stage = next((payload[k] for k in _STAGE_KEYS if payload.get(k) is not None), None)
    if not isinstance(stage, str):
        return None
    stage = stage.strip()
    return stage or None


def _status(payload: Dict[str, Any], event_type: str) -> Optional[str]:
    status = payload.get("status")
    if status is not None:
        return status
    if "failed" in event_type:
        return "failure"
    if "completed" in event_type:
        return "success"
    return None


def _latency(payload: Dict[str, Any]) -> Optional[float]:
    raw = payload.get("latencyMs")
    if raw is None:
        nested = payload.get("metadata")
        if isinstance(nested, dict):
            raw = nested.get("latencyMs")
    return to_number(raw)


class AgentPerformancePipeline:
    name = AnalyticsPipelines.AGENT_PERFORMANCE
    description = "Aggregates agent throughput, latency, and retry behaviour into AgentPerformanceMetric records."

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        started = time.monotonic()
        with pipeline_span(
            ctx, "analytics.pipeline.agent-performance", "Agent performance pipeline failure",
        ) as span:
            events = await ctx.store.find_telemetry_events(
                PERFORMANCE_EVENT_TYPES, ctx.window.start, ctx.window.end, order_by_occurred_at=True,
            )
            if not events:
                return empty_result(
                    self.name, ctx, span, started,
                    warning="No agent performance telemetry events detected in window",
                    event="No agent performance telemetry in window",
                )

            by_stage: Dict[str, _StageAccumulator] = {}
            for event in events:
                payload = payload_of(event)
                stage = derive_stage_key(payload)
                if not stage:
                    continue
                acc = by_stage.setdefault(stage, _StageAccumulator())

                status = _status(payload, event.event_type)
                if status == "success":
                    acc.successes += 1
                    acc.tasks_processed += 1
                elif status == "failure":
                    acc.failures += 1
                    acc.tasks_processed += 1

                latency = _latency(payload)
                if latency is not None:
                    acc.latency_total += latency
                    acc.latency_samples += 1
                    acc.latency_max = max(acc.latency_max, latency)
                    acc.latency_min = min(acc.latency_min, latency)

                if payload.get("fallback"):
                    acc.fallback_count += 1
                if payload.get("humanHandOff"):
                    acc.human_hand_off_count += 1

                retries = to_number(payload.get("retries"))
                if retries is not None and retries > 0:
                    acc.retry_count += retries

                sample = payload.get("metadata")
                if sample and isinstance(sample, dict) and len(acc.metadata_samples) < METADATA_SAMPLE_CAP:
                    acc.metadata_samples.append(sample)

            latency_baseline = max(ctx.settings.quality_score.latency_baseline_ms, 1)
            warnings: List[str] = []
            records = 0
            for stage, acc in by_stage.items():
                if acc.tasks_processed == 0:
                    warnings.append(f"Stage {stage} had no completed tasks in window.")
                    continue

                tasks = acc.tasks_processed
                avg_latency = (
                    acc.latency_total / acc.latency_samples if acc.latency_samples > 0 else latency_baseline
                )
                metadata: Dict[str, Any] = {
                    "latencySamples": acc.latency_samples,
                    "latencyMax": acc.latency_max if acc.latency_samples > 0 else None,
                    "latencyMin": acc.latency_min if acc.latency_samples > 0 else None,
                    "retries": acc.retry_count,
                }
                if acc.metadata_samples:
                    metadata["samples"] = acc.metadata_samples
                metadata.update(window_metadata(ctx.window))

                await ctx.store.record_agent_performance(AgentPerformanceMetric(
                    agent_stage=stage,
                    window_start=ctx.window.start,
                    window_end=ctx.window.end,
                    tasks_processed=tasks,
                    avg_latency_ms=int(math.floor(avg_latency + 0.5)),
                    success_rate=round(acc.successes / tasks, 4),
                    fallback_rate=round(acc.fallback_count / tasks, 4),
                    human_hand_off_rate=round(acc.human_hand_off_count / tasks, 4),
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
                metadata=window_metadata(ctx.window, stages=list(by_stage)),
                next_cursor=ctx.window.end,
                telemetry_events_scanned=len(events),
            )


def create_agent_performance_pipeline(settings: AnalyticsSettings) -> PipelineDefinition:
    pipeline = AgentPerformancePipeline()
    return PipelineDefinition(
        name=pipeline.name,
        description=pipeline.description,
        interval_ms=settings.ingestion.interval_ms,
        run=pipeline.run,
    )
