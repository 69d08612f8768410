"""Analytics ingestion service.

Turns append-only telemetry events into derived analytics records on a
schedule, one persisted cursor per pipeline.

Modules:
- constants: pipeline names, event types, tick limits
- models: events, cursors, windows, results, derived records
- lock_manager: Redis distributed lock
- scheduler: interval -> cron derivation, APScheduler wrapper
- shared_state: in-process scratch map
- observability: Prometheus instruments
- storage: SQL, retry, async store
- pipelines: the five aggregation/detection strategies
- registry: named strategies
- orchestrator: locking, catch-up windows, cursor persistence
- bootstrap: dependency wiring for the API and CLI
"""

from .orchestrator import AnalyticsIngestionOrchestrator
from .registry import create_pipeline_registry

__all__ = [
    "AnalyticsIngestionOrchestrator",
    "create_pipeline_registry",
]
