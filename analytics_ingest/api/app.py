"""FastAPI surface of the ingestion service.

    uvicorn analytics_ingest.api.app:app --host 0.0.0.0 --port 8010
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..bootstrap import IngestionService, build_service
from . import health, ingestion

logger = logging.getLogger(__name__)


def create_app(
    service: Optional[IngestionService] = None,
    *,
    start_orchestrator: bool = True,
) -> FastAPI:
    """Build the app. A prebuilt ``service`` is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = service is None
        svc = service or build_service()
        app.state.service = svc
        if start_orchestrator:
            await svc.orchestrator.start()
            logger.info("[AnalyticsIngestion] Orchestrator started pipelines=%d", len(svc.orchestrator.pipelines))
        try:
            yield
        finally:
            await svc.orchestrator.stop()
            if owned:
                svc.close()
            logger.info("[AnalyticsIngestion] Shutdown complete")

    app = FastAPI(title="Analytics Ingestion Service", version="0.1.0", lifespan=lifespan)
    app.include_router(health.router)
    app.include_router(ingestion.router)
    return app


app = create_app()
