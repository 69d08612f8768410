"""Prometheus instruments for pipeline invocations.

Instruments live on an injected CollectorRegistry so several orchestrators
(or tests) never collide on the process-wide default registry.
"""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram

_DURATION_BUCKETS_MS = (
    10, 50, 100, 250, 500, 1_000, 2_500, 5_000, 10_000, 30_000, 60_000, 120_000, 300_000,
)


class PipelineMetrics:
    """Invocation, window, record and telemetry counters plus duration histogram."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.invocations = Counter(
            "analytics_ingestion_invocations",
            "Count of analytics ingestion pipeline invocations",
            ["pipeline"],
            registry=self.registry,
        )
        self.windows = Counter(
            "analytics_ingestion_windows_processed",
            "Number of ingestion windows processed per pipeline run",
            ["pipeline"],
            registry=self.registry,
        )
        self.records = Counter(
            "analytics_ingestion_records_processed",
            "Number of analytics records persisted per pipeline run",
            ["pipeline"],
            registry=self.registry,
        )
        self.telemetry_events = Counter(
            "analytics_ingestion_telemetry_events",
            "Total telemetry events scanned during ingestion runs",
            ["pipeline"],
            registry=self.registry,
        )
        self.duration_ms = Histogram(
            "analytics_ingestion_duration_ms",
            "Pipeline invocation duration in milliseconds",
            ["pipeline"],
            buckets=_DURATION_BUCKETS_MS,
            registry=self.registry,
        )

    def record(
        self,
        pipeline: str,
        *,
        windows_processed: int,
        records_processed: int,
        duration_ms: float,
        telemetry_events: int,
    ) -> None:
        self.invocations.labels(pipeline=pipeline).inc()
        if windows_processed > 0:
            self.windows.labels(pipeline=pipeline).inc(windows_processed)
        if records_processed > 0:
            self.records.labels(pipeline=pipeline).inc(records_processed)
        if telemetry_events > 0:
            self.telemetry_events.labels(pipeline=pipeline).inc(telemetry_events)
        if duration_ms >= 0:
            self.duration_ms.labels(pipeline=pipeline).observe(duration_ms)
