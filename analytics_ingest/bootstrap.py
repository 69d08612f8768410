"""Wires settings, engine, Redis, store, metrics and orchestrator together.

Shared by the HTTP app lifespan and the runner CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine
from common.redis_connection import RedisConnection

from .lock_manager import RedisLockManager
from .models import PipelineDefinition
from .observability import PipelineMetrics
from .orchestrator import AnalyticsIngestionOrchestrator
from .storage import AnalyticsStore, ensure_schema

logger = logging.getLogger(__name__)


@dataclass
class IngestionService:
    settings: Settings
    engine: Engine
    redis: RedisConnection
    store: AnalyticsStore
    metrics: PipelineMetrics
    orchestrator: AnalyticsIngestionOrchestrator

    def close(self) -> None:
        self.redis.disconnect()
        self.engine.dispose()
        logger.info("[AnalyticsIngestion] Service resources released")


def build_service(
    settings: Optional[Settings] = None,
    *,
    pipelines: Optional[List[PipelineDefinition]] = None,
    create_schema: bool = False,
) -> IngestionService:
    settings = settings or get_settings()
    engine = get_engine(settings)
    if create_schema:
        ensure_schema(engine)

    redis_conn = RedisConnection(settings.redis_url)
    if not redis_conn.connect():
        # Lock acquisition fails open to "not acquired" until Redis is back.
        logger.warning("[AnalyticsIngestion] Redis unavailable at start-up; pipelines will skip until it recovers")

    store = AnalyticsStore(engine)
    metrics = PipelineMetrics()
    orchestrator = AnalyticsIngestionOrchestrator(
        store,
        RedisLockManager(redis_conn.client, key_prefix=settings.redis_key_prefix),
        settings.analytics,
        redis=redis_conn.client,
        metrics=metrics,
        pipelines=pipelines,
    )
    return IngestionService(
        settings=settings,
        engine=engine,
        redis=redis_conn,
        store=store,
        metrics=metrics,
        orchestrator=orchestrator,
    )
