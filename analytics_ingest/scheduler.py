"""Cron-driven periodic triggers on top of APScheduler's AsyncIOScheduler."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .constants import CRON_FALLBACK

logger = logging.getLogger(__name__)

Handler = Callable[[], Awaitable[None]]

# Overlap is guarded by the orchestrator's in-flight set, not by APScheduler.
_MAX_JOB_INSTANCES = 100


def derive_cron_expression(interval_ms) -> str:
    """Coarsest six-field cron expression that exactly represents ``interval_ms``.

    Anything that does not divide cleanly into seconds/minutes/hours/days falls
    back to ``CRON_FALLBACK`` instead of being approximated.
    """
    try:
        interval = float(interval_ms)
    except (TypeError, ValueError):
        return CRON_FALLBACK
    if not math.isfinite(interval) or interval <= 0:
        return CRON_FALLBACK

    # round half up, not banker's rounding
    seconds = int(math.floor(interval / 1000 + 0.5))
    if seconds < 60:
        return f"*/{max(seconds, 1)} * * * * *"

    if seconds % 60 == 0:
        minutes = seconds // 60
        if minutes < 60:
            return f"0 */{max(minutes, 1)} * * * *"

        if minutes % 60 == 0:
            hours = minutes // 60
            if hours < 24:
                return f"0 0 */{max(hours, 1)} * * *"

            if hours % 24 == 0:
                days = hours // 24
                return f"0 0 0 */{max(days, 1)} * *"

    return CRON_FALLBACK


def cron_trigger_from_expression(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """Build a CronTrigger from ``second minute hour day month day_of_week``."""
    fields = expression.split()
    if len(fields) != 6:
        raise ValueError(f"expected 6 cron fields, got {len(fields)}: {expression!r}")
    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone,
    )


def trigger_for(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """CronTrigger for ``expression``, or for ``CRON_FALLBACK`` when APScheduler rejects it.

    Day steps above 30 are valid interval derivations but out of range for the
    day field.
    """
    try:
        return cron_trigger_from_expression(expression, timezone)
    except ValueError as e:
        logger.warning(
            "SCHEDULER unsupported_expression expression=%r fallback=%r err=%s", expression, CRON_FALLBACK, e,
        )
        return cron_trigger_from_expression(CRON_FALLBACK, timezone)


class SchedulerHandle:
    """Stops future triggers of one job. In-flight runs are left alone."""

    def __init__(self, scheduler: AsyncIOScheduler, job_id: str):
        self._scheduler = scheduler
        self._job_id = job_id

    @property
    def job_id(self) -> str:
        return self._job_id

    async def stop(self) -> None:
        try:
            self._scheduler.remove_job(self._job_id)
        except JobLookupError:
            logger.debug("SCHEDULER job_already_removed job=%s", self._job_id)


class CronScheduler:
    """Schedules async handlers; a handler exception never kills later ticks."""

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self._scheduler = scheduler
        self._initial_runs: Set[asyncio.Task] = set()

    def _ensure_scheduler(self) -> AsyncIOScheduler:
        # Bound to the running loop, so it is created on first use.
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        return self._scheduler

    def schedule(
        self,
        label: str,
        handler: Handler,
        *,
        expression: Optional[str] = None,
        run_on_init: bool = False,
        timezone: Optional[str] = None,
    ) -> SchedulerHandle:
        expression = expression or CRON_FALLBACK
        trigger = trigger_for(expression, timezone)
        scheduler = self._ensure_scheduler()

        async def _tick() -> None:
            await _run_guarded(label, handler, "Handler execution failed")

        scheduler.add_job(
            _tick,
            trigger=trigger,
            id=label,
            name=label,
            replace_existing=True,
            max_instances=_MAX_JOB_INSTANCES,
            coalesce=True,
        )
        if not scheduler.running:
            scheduler.start()

        if run_on_init:
            # fire-and-forget; start-up does not wait for the first run
            task = asyncio.ensure_future(
                _run_guarded(label, handler, "Initial handler run failed")
            )
            self._initial_runs.add(task)
            task.add_done_callback(self._initial_runs.discard)

        logger.debug("SCHEDULER scheduled label=%s expression=%s tz=%s", label, expression, timezone)
        return SchedulerHandle(scheduler, label)

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)


async def _run_guarded(label: str, handler: Handler, message: str) -> None:
    try:
        await handler()
    except Exception:
        logger.exception("[IngestionScheduler] %s label=%s", message, label)
