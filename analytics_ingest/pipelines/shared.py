"""Helpers shared by the pipeline implementations."""

from __future__ import annotations

import math
import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from ..models import PipelineContext, PipelineResult, PipelineWindow


# Plain decimal literals only; float() alone would also take "1_000" and "nan".
_DECIMAL = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def to_number(value: Any) -> Optional[float]:
    """Finite number from an int/float or a decimal string; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _DECIMAL.fullmatch(text):
            return None
        number = float(text)
    else:
        return None
    return number if math.isfinite(number) else None


def trimmed(value: Any) -> str:
    """Stripped string, or '' for anything that is not a string."""
    return value.strip() if isinstance(value, str) else ""


def payload_of(event) -> Dict[str, Any]:
    payload = event.payload
    return payload if isinstance(payload, dict) else {}


def iso(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def window_metadata(window: PipelineWindow, **extra: Any) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "windowStart": iso(window.start),
        "windowEnd": iso(window.end),
    }
    metadata.update(extra)
    return metadata


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def empty_result(
    pipeline: str,
    ctx: PipelineContext,
    span: Span,
    started: float,
    warning: str,
    event: str,
    telemetry_events_scanned: int = 0,
) -> PipelineResult:
    """Result for a window with nothing to aggregate; the cursor still advances."""
    span.add_event(event)
    duration_ms = elapsed_ms(started)
    span.set_attributes({
        "analytics.pipeline.records": 0,
        "analytics.pipeline.durationMs": duration_ms,
        "analytics.pipeline.telemetryEvents": telemetry_events_scanned,
    })
    return PipelineResult(
        pipeline=pipeline,
        records_processed=0,
        duration_ms=duration_ms,
        warnings=[warning],
        metadata=window_metadata(ctx.window),
        next_cursor=ctx.window.end,
        telemetry_events_scanned=telemetry_events_scanned,
    )


@contextmanager
def pipeline_span(ctx: PipelineContext, name: str, failure_message: str) -> Iterator[Span]:
    """One span per run, parented to the orchestrator's window span.

    Exceptions are recorded, the status set to ERROR and the error re-raised;
    the span is always ended.
    """
    parent = trace.set_span_in_context(ctx.span) if ctx.span is not None else None
    span = ctx.tracer.start_span(name, context=parent)
    try:
        yield span
    except Exception as e:
        span.record_exception(e)
        span.set_status(Status(StatusCode.ERROR, failure_message))
        raise
    finally:
        span.end()
