"""Statistical anomaly detection over agent-performance and quality records.

The current window is compared per stage against a trailing baseline of
24 prior windows:

    success regression   baseline_mean - current > std_deviations * baseline_std
    critical floor       current <= critical_success_rate        -> critical
    latency regression   current / baseline >= latency factor    -> error
    quality regression   baseline - current > std_deviations * 5

Severity defaults to ``warning``; ``critical`` is never downgraded.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from common.config import AnalyticsSettings, AnomalySettings

from ..constants import AnalyticsPipelines
from ..models import (
    AgentPerformanceMetric,
    AnalyticsAnomaly,
    AnomalySeverity,
    PipelineContext,
    PipelineDefinition,
    PipelineResult,
    QualityScoreObservation,
)
from .shared import elapsed_ms, empty_result, iso, pipeline_span, window_metadata

BASELINE_WINDOWS = 24
STDDEV_FLOOR = 0.01
# Quality scores live on a 0..100 scale; the std multiplier is applied to this fixed unit.
QUALITY_THRESHOLD_SCALE = 5


def mean(values: List[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def sample_std(values: List[float], reference: Optional[float] = None) -> float:
    if len(values) < 2:
        return 0.0
    reference = mean(values) if reference is None else reference
    variance = sum((v - reference) ** 2 for v in values) / (len(values) - 1)
    return math.sqrt(variance)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


@dataclass
class StageSnapshot:
    success_rate: float = 0.0
    fallback_rate: float = 0.0
    human_hand_off_rate: float = 0.0
    avg_latency_ms: float = 0.0
    tasks_processed: int = 0
    quality_score: Optional[float] = None

    def absorb(self, metric: AgentPerformanceMetric) -> None:
        """Fold one metric in, weighted by tasks processed."""
        total = self.tasks_processed + metric.tasks_processed
        weight = metric.tasks_processed
        if total > 0:
            prev = self.tasks_processed
            self.success_rate = (self.success_rate * prev + metric.success_rate * weight) / total
            self.fallback_rate = (self.fallback_rate * prev + metric.fallback_rate * weight) / total
            self.human_hand_off_rate = (
                self.human_hand_off_rate * prev + metric.human_hand_off_rate * weight
            ) / total
            self.avg_latency_ms = (self.avg_latency_ms * prev + metric.avg_latency_ms * weight) / total
        self.tasks_processed = total


@dataclass
class _BaselineAggregation:
    tasks: int = 0
    success_rates: List[float] = field(default_factory=list)
    fallback_rates: List[float] = field(default_factory=list)
    hand_off_rates: List[float] = field(default_factory=list)
    latencies: List[float] = field(default_factory=list)
    quality_scores: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class BaselineStats:
    success_mean: float
    success_std: float
    fallback_mean: float
    human_hand_off_mean: float
    latency_mean: float
    quality_mean: Optional[float]
    samples: int
    tasks: int


def current_snapshots(
    metrics: Iterable[AgentPerformanceMetric],
    observations: Iterable[QualityScoreObservation],
) -> Dict[str, StageSnapshot]:
    snapshots: Dict[str, StageSnapshot] = {}
    for metric in metrics:
        stage = metric.agent_stage.strip()
        if stage:
            snapshots.setdefault(stage, StageSnapshot()).absorb(metric)

    quality: Dict[str, List[float]] = {}
    for obs in observations:
        stage = obs.agent_stage.strip()
        if stage:
            quality.setdefault(stage, []).append(obs.score)
    for stage, scores in quality.items():
        snapshots.setdefault(stage, StageSnapshot()).quality_score = mean(scores)
    return snapshots


def baseline_stats(
    metrics: Iterable[AgentPerformanceMetric],
    observations: Iterable[QualityScoreObservation],
) -> Dict[str, BaselineStats]:
    by_stage: Dict[str, _BaselineAggregation] = {}
    for metric in metrics:
        stage = metric.agent_stage.strip()
        if not stage:
            continue
        agg = by_stage.setdefault(stage, _BaselineAggregation())
        agg.tasks += metric.tasks_processed
        agg.success_rates.append(_clamp(metric.success_rate, 0, 1))
        agg.fallback_rates.append(_clamp(metric.fallback_rate, 0, 1))
        agg.hand_off_rates.append(_clamp(metric.human_hand_off_rate, 0, 1))
        agg.latencies.append(max(metric.avg_latency_ms, 0))
    for obs in observations:
        stage = obs.agent_stage.strip()
        if stage:
            by_stage.setdefault(stage, _BaselineAggregation()).quality_scores.append(
                _clamp(obs.score, 0, 100)
            )

    stats: Dict[str, BaselineStats] = {}
    for stage, agg in by_stage.items():
        samples = max(len(agg.success_rates), len(agg.quality_scores))
        if samples == 0:
            continue
        success_mean = mean(agg.success_rates)
        stats[stage] = BaselineStats(
            success_mean=success_mean,
            success_std=max(sample_std(agg.success_rates, success_mean), STDDEV_FLOOR),
            fallback_mean=mean(agg.fallback_rates),
            human_hand_off_mean=mean(agg.hand_off_rates),
            latency_mean=mean(agg.latencies),
            quality_mean=mean(agg.quality_scores) if agg.quality_scores else None,
            samples=samples,
            tasks=agg.tasks,
        )
    return stats


def evaluate_triggers(
    snapshot: StageSnapshot,
    baseline: BaselineStats,
    config: AnomalySettings,
) -> Tuple[AnomalySeverity, List[str]]:
    triggers: List[str] = []
    severity = AnomalySeverity.WARNING

    success_delta = baseline.success_mean - snapshot.success_rate
    if success_delta > baseline.success_std * config.std_deviations and success_delta > 0:
        triggers.append(
            f"Success rate dropped by {success_delta * 100:.2f} pts "
            f"(baseline {baseline.success_mean * 100:.2f}%, current {snapshot.success_rate * 100:.2f}%)."
        )

    if snapshot.success_rate <= config.critical_success_rate:
        triggers.append(
            f"Success rate {snapshot.success_rate * 100:.2f}% fell below critical threshold "
            f"{config.critical_success_rate * 100:.2f}%."
        )
        severity = AnomalySeverity.CRITICAL

    if baseline.latency_mean > 0:
        ratio = snapshot.avg_latency_ms / baseline.latency_mean
        if ratio >= config.warning_latency_factor:
            triggers.append(
                f"Latency regression {ratio * 100 - 100:.2f}% over baseline "
                f"(baseline {baseline.latency_mean:.0f}ms, current {snapshot.avg_latency_ms:.0f}ms)."
            )
            if severity is not AnomalySeverity.CRITICAL:
                severity = AnomalySeverity.ERROR

    if baseline.quality_mean is not None and snapshot.quality_score is not None:
        quality_delta = baseline.quality_mean - snapshot.quality_score
        if quality_delta > config.std_deviations * QUALITY_THRESHOLD_SCALE and quality_delta > 0:
            triggers.append(
                f"Quality score dropped {quality_delta:.2f} pts "
                f"(baseline {baseline.quality_mean:.2f}, current {snapshot.quality_score:.2f})."
            )

    return severity, triggers


class AnomalyPipeline:
    name = AnalyticsPipelines.ANOMALIES
    description = "Detects anomalies across agent performance and quality metrics and records alert metadata."

    async def run(self, ctx: PipelineContext) -> PipelineResult:
        started = time.monotonic()
        with pipeline_span(ctx, "analytics.pipeline.anomaly", "Anomaly detection pipeline failure") as span:
            window = ctx.window
            lookback = timedelta(minutes=ctx.settings.ingestion.window_minutes * BASELINE_WINDOWS)
            baseline_start = window.start - lookback

            current_perf = await ctx.store.find_agent_performance_metrics(
                window_start_gte=window.start, window_end_lte=window.end,
            )
            baseline_perf = await ctx.store.find_agent_performance_metrics(
                window_end_gte=baseline_start, window_end_lt=window.start,
            )
            current_quality = await ctx.store.find_quality_observations(window.start, window.end)
            baseline_quality = await ctx.store.find_quality_observations(baseline_start, window.start)

            scanned = len(current_perf) + len(current_quality)
            if scanned == 0:
                return empty_result(
                    self.name, ctx, span, started,
                    warning="No metrics recorded during ingestion window; anomaly detection skipped.",
                    event="No metrics available for anomaly detection",
                )

            snapshots = current_snapshots(current_perf, current_quality)
            baselines = baseline_stats(baseline_perf, baseline_quality)
            config = ctx.settings.anomalies

            warnings: List[str] = []
            records = 0
            for stage, snapshot in snapshots.items():
                if snapshot.tasks_processed < config.min_samples:
                    warnings.append(
                        f"Stage {stage} processed {snapshot.tasks_processed} tasks "
                        f"(< {config.min_samples}); anomaly detection skipped."
                    )
                    continue
                baseline = baselines.get(stage)
                if baseline is None:
                    warnings.append(f"No baseline metrics available for stage {stage}; skipping anomaly checks.")
                    continue
                if baseline.tasks < config.min_samples:
                    warnings.append(
                        f"Baseline metrics for stage {stage} have insufficient samples ({baseline.tasks}); skipping."
                    )
                    continue

                severity, triggers = evaluate_triggers(snapshot, baseline, config)
                if not triggers:
                    continue

                await ctx.store.record_analytics_anomaly(AnalyticsAnomaly(
                    source=stage,
                    severity=severity,
                    description=f"Anomaly detected for stage {stage}: {' '.join(triggers)}",
                    occurred_at=window.end,
                    metadata=window_metadata(
                        window,
                        baselineStart=iso(baseline_start),
                        baselineSamples=baseline.samples,
                        baselineTasks=baseline.tasks,
                        currentTasks=snapshot.tasks_processed,
                        successRate=snapshot.success_rate,
                        fallbackRate=snapshot.fallback_rate,
                        humanHandOffRate=snapshot.human_hand_off_rate,
                        avgLatencyMs=snapshot.avg_latency_ms,
                        qualityScore=snapshot.quality_score,
                        triggers=triggers,
                    ),
                ))
                records += 1

            duration_ms = elapsed_ms(started)
            span.set_attributes({
                "analytics.pipeline.records": records,
                "analytics.pipeline.durationMs": duration_ms,
                "analytics.pipeline.telemetryEvents": scanned,
                "analytics.pipeline.analyzedStages": len(snapshots),
            })
            return PipelineResult(
                pipeline=self.name,
                records_processed=records,
                duration_ms=duration_ms,
                warnings=warnings,
                metadata=window_metadata(
                    window, baselineStart=iso(baseline_start), analyzedStages=list(snapshots),
                ),
                next_cursor=window.end,
                telemetry_events_scanned=scanned,
            )


def create_anomaly_pipeline(settings: AnalyticsSettings) -> PipelineDefinition:
    pipeline = AnomalyPipeline()
    return PipelineDefinition(
        name=pipeline.name,
        description=pipeline.description,
        interval_ms=settings.ingestion.interval_ms,
        run=pipeline.run,
    )
