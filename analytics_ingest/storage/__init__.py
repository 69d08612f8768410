"""Persistence for cursors, telemetry reads and derived analytics records."""

from .schema import ensure_schema
from .store import AnalyticsStore

__all__ = [
    "AnalyticsStore",
    "ensure_schema",
]
