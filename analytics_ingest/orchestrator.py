"""Analytics ingestion orchestrator.

Per pipeline, every scheduler tick:

    Idle -> LockAcquiring -> LockDenied -> Idle
                          -> Running    -> Idle

While running, the persisted cursor is advanced one window at a time (up to
MAX_WINDOWS_PER_TICK windows per tick). Each window's cursor is written as
soon as that window succeeds, so a crash loses at most one window of work.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

from common.config import AnalyticsSettings

from .constants import LOCK_GRACE_FACTOR, LOCK_KEY_PREFIX, LOCK_MIN_TTL_MS, MAX_WINDOWS_PER_TICK
from .lock_manager import RedisLockManager
from .models import IngestionState, PipelineContext, PipelineDefinition, PipelineResult, PipelineWindow
from .observability import PipelineMetrics
from .pipelines.shared import iso
from .registry import create_pipeline_registry, index_pipelines, lookup
from .scheduler import CronScheduler, SchedulerHandle, derive_cron_expression
from .shared_state import SharedState
from .storage.store import AnalyticsStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def lock_ttl_ms(interval_ms: int) -> int:
    return max(int(interval_ms) * LOCK_GRACE_FACTOR, LOCK_MIN_TTL_MS)


def window_duration(settings: AnalyticsSettings) -> timedelta:
    return timedelta(minutes=max(1, settings.ingestion.window_minutes))


def _valid_cursor(value: Any) -> bool:
    return isinstance(value, datetime) and value.tzinfo is not None and value.utcoffset() is not None


class AnalyticsIngestionOrchestrator:
    def __init__(
        self,
        store: AnalyticsStore,
        lock_manager: RedisLockManager,
        settings: AnalyticsSettings,
        *,
        redis: Any = None,
        tracer: Optional[Tracer] = None,
        metrics: Optional[PipelineMetrics] = None,
        scheduler: Optional[CronScheduler] = None,
        pipelines: Optional[List[PipelineDefinition]] = None,
        shared_state: Optional[SharedState] = None,
        clock: Optional[Clock] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._store = store
        self._locks = lock_manager
        self._settings = settings
        self._redis = redis
        self._tracer = tracer or trace.get_tracer("analytics-ingestion")
        self._metrics = metrics or PipelineMetrics()
        self._scheduler = scheduler or CronScheduler()
        self._shared = shared_state or SharedState()
        self._clock = clock or _utc_now
        self._log = log or logger

        definitions = pipelines if pipelines is not None else create_pipeline_registry(settings)
        self._pipelines: Dict[str, PipelineDefinition] = index_pipelines(definitions)
        self._handles: Dict[str, SchedulerHandle] = {}
        self._in_flight: Set[str] = set()
        self._started = False

    @property
    def pipelines(self) -> List[PipelineDefinition]:
        return list(self._pipelines.values())

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            self._log.warning("[AnalyticsIngestion] Orchestrator already started")
            return

        tz = self._settings.ingestion.timezone
        try:
            for definition in self._pipelines.values():
                expression = derive_cron_expression(definition.interval_ms)
                handle = self._scheduler.schedule(
                    definition.name,
                    self._tick_handler(definition),
                    expression=expression,
                    run_on_init=True,
                    timezone=tz,
                )
                self._handles[definition.name] = handle
                self._log.info(
                    "[AnalyticsIngestion] Scheduled pipeline pipeline=%s cron=%r interval_ms=%d",
                    definition.name, expression, definition.interval_ms,
                )
        except Exception:
            self._log.exception("[AnalyticsIngestion] Start failed; unscheduling pipelines")
            await self._stop_handles()
            raise
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        await self._stop_handles()

    async def _stop_handles(self) -> None:
        for name, handle in list(self._handles.items()):
            try:
                await handle.stop()
            except Exception as e:
                self._log.error(
                    "[AnalyticsIngestion] Failed to stop scheduler handle pipeline=%s err=%s", name, e,
                )
        self._handles.clear()
        self._scheduler.shutdown()
        self._started = False

    def _tick_handler(self, definition: PipelineDefinition):
        async def _handler() -> None:
            await self.execute_pipeline(definition)
        return _handler

    async def run_pipeline(self, name: str) -> None:
        """Run one tick of ``name`` now; raises PipelineNotFoundError for unknown names."""
        await self.execute_pipeline(lookup(self._pipelines, name))

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------

    async def execute_pipeline(self, definition: PipelineDefinition) -> None:
        name = definition.name
        if name in self._in_flight:
            self._log.warning("[AnalyticsIngestion] Skipping run; pipeline already in-flight pipeline=%s", name)
            return
        self._in_flight.add(name)

        lock = await self._locks.acquire(f"{LOCK_KEY_PREFIX}{name}", lock_ttl_ms(definition.interval_ms))
        if lock is None:
            self._log.debug("[AnalyticsIngestion] Lock contention - another worker running pipeline=%s", name)
            self._in_flight.discard(name)
            return

        span_len = window_duration(self._settings)
        try:
            state = await self._ensure_state(name, span_len)
            window_start = state.last_processed_at
            windows = 0
            records = 0
            telemetry_events = 0
            started = time.monotonic()

            while windows < MAX_WINDOWS_PER_TICK:
                now = self._clock()
                if window_start >= now:
                    break
                window_end = min(window_start + span_len, now)
                if window_end <= window_start:
                    break

                window = PipelineWindow(start=window_start, end=window_end, state=state)
                result = await self._run_window(definition, window)

                next_cursor = window_end if result.next_cursor is None else result.next_cursor
                if not _valid_cursor(next_cursor):
                    self._log.error(
                        "[AnalyticsIngestion] Invalid next cursor; aborting catch-up loop pipeline=%s cursor=%r",
                        name, next_cursor,
                    )
                    break

                for warning in result.warnings:
                    self._log.warning("[AnalyticsIngestion] Pipeline warning pipeline=%s warning=%s", name, warning)

                state = await self._store.update_ingestion_state(name, next_cursor, result.metadata)

                window_start = next_cursor
                windows += 1
                records += result.records_processed
                telemetry_events += result.telemetry_events_scanned

                if next_cursor >= now:
                    break

            duration_ms = int((time.monotonic() - started) * 1000)
            self._metrics.record(
                name,
                windows_processed=windows,
                records_processed=records,
                duration_ms=duration_ms,
                telemetry_events=telemetry_events,
            )
            self._log.info(
                "[AnalyticsIngestion] Pipeline invocation complete pipeline=%s windows=%d records=%d "
                "telemetry_events=%d duration_ms=%d",
                name, windows, records, telemetry_events, duration_ms,
            )
        except Exception as e:
            self._log.error("[AnalyticsIngestion] Pipeline execution encountered error pipeline=%s err=%s", name, e)
            raise
        finally:
            await self._locks.release(lock)
            self._in_flight.discard(name)

    async def _run_window(self, definition: PipelineDefinition, window: PipelineWindow) -> PipelineResult:
        span = self._tracer.start_span(
            "analytics.ingestion.window",
            attributes={
                "analytics.pipeline": definition.name,
                "analytics.window.start": iso(window.start),
                "analytics.window.end": iso(window.end),
            },
        )
        ctx = PipelineContext(
            store=self._store,
            settings=self._settings,
            logger=self._log,
            tracer=self._tracer,
            span=span,
            window=window,
            shared=self._shared,
            redis=self._redis,
        )
        try:
            return await definition.run(ctx)
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, "Pipeline execution failed"))
            self._log.error("[AnalyticsIngestion] Pipeline run failed pipeline=%s err=%s", definition.name, e)
            raise
        finally:
            span.end()

    async def _ensure_state(self, name: str, span_len: timedelta) -> IngestionState:
        existing = await self._store.get_ingestion_state(name)
        if existing is not None:
            return existing
        return await self._store.create_ingestion_state(name, self._clock() - span_len, None)
