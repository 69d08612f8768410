"""Health, readiness and Prometheus endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from common.db import ping as db_ping

from ..bootstrap import IngestionService
from .deps import get_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness check: ok while the process is up."""
    return {"status": "ok"}


@router.get("/ready")
def ready(service: IngestionService = Depends(get_service)):
    """Readiness check: checks DB and Redis connectivity.

    Failure details are logged, never returned to the caller.
    """
    checks = {
        "database": db_ping(service.engine),
        "redis": service.redis.ping(),
    }
    if not all(checks.values()):
        logger.warning("[HEALTH] not ready checks=%s", checks)
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready", "checks": checks}


@router.get("/metrics")
def metrics(service: IngestionService = Depends(get_service)):
    return Response(content=generate_latest(service.metrics.registry), media_type=CONTENT_TYPE_LATEST)
