"""Shared fixtures: settings, in-memory SQLite store, fake Redis, contexts."""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from analytics_ingest.models import IngestionState, PipelineContext, PipelineWindow
from analytics_ingest.shared_state import SharedState
from analytics_ingest.storage import AnalyticsStore, ensure_schema
from common.config import AnalyticsSettings


class FakeRedis:
    """Just enough of redis-py for the lock manager: SET NX PX and the release script."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.set_calls = []

    def set(self, name, value, nx=False, px=None):
        self.set_calls.append((name, value, nx, px))
        if nx and name in self.store:
            return None
        self.store[name] = value
        if px is not None:
            self.ttls[name] = px
        return True

    def get(self, name):
        return self.store.get(name)

    def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            self.ttls.pop(key, None)
            return 1
        return 0

    def ping(self):
        return True

    def expire_now(self, name):
        """Simulate TTL expiry."""
        self.store.pop(name, None)
        self.ttls.pop(name, None)


@pytest.fixture
def settings() -> AnalyticsSettings:
    return AnalyticsSettings()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> AnalyticsStore:
    return AnalyticsStore(engine)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def tracer():
    return MagicMock()


@pytest.fixture
def make_context(store, settings, tracer):
    """Factory: PipelineContext for an explicit [start, end) window."""

    def _make(
        start: datetime,
        end: datetime,
        *,
        analytics: Optional[AnalyticsSettings] = None,
        context_store: Any = None,
    ) -> PipelineContext:
        state = IngestionState(pipeline="test", last_processed_at=start, metadata=None, updated_at=start)
        return PipelineContext(
            store=context_store or store,
            settings=analytics or settings,
            logger=logging.getLogger("tests"),
            tracer=tracer,
            span=MagicMock(),
            window=PipelineWindow(start=start, end=end, state=state),
            shared=SharedState(),
        )

    return _make


@pytest.fixture
def add_event(store):
    async def _add(event_type: str, payload: Optional[Dict[str, Any]], occurred_at: datetime) -> None:
        await store.add_telemetry_event(event_type, payload, occurred_at)

    return _add


@pytest.fixture
def capture(store, monkeypatch):
    """Record what a pipeline hands to one ``store.record_*`` method, then persist it."""

    def _capture(method: str):
        captured = []
        real = getattr(store, method)

        async def spy(row):
            captured.append(row)
            await real(row)

        monkeypatch.setattr(store, method, spy)
        return captured

    return _capture
