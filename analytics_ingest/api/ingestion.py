"""Cursor inspection, on-demand pipeline runs and the anomaly lifecycle."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, Query, status

from ..bootstrap import IngestionService
from ..errors import PipelineNotFoundError, StorageError
from ..orchestrator import AnalyticsIngestionOrchestrator
from .deps import get_service
from .schemas import AnomalyList, AnomalyOut, IngestionOverview, IngestionStateOut, PipelineOut, RunAccepted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingestion", tags=["ingestion"])


@router.get("/state", response_model=List[IngestionStateOut])
async def list_states(service: IngestionService = Depends(get_service)):
    try:
        states = await service.store.list_ingestion_states()
    except StorageError:
        raise HTTPException(status_code=503, detail="state unavailable")
    in_flight = service.orchestrator.in_flight
    return [
        IngestionStateOut(
            pipeline=s.pipeline,
            last_processed_at=s.last_processed_at,
            updated_at=s.updated_at,
            metadata=s.metadata,
            in_flight=s.pipeline in in_flight,
        )
        for s in states
    ]


@router.get("/pipelines", response_model=IngestionOverview)
async def list_pipelines(service: IngestionService = Depends(get_service)):
    orchestrator = service.orchestrator
    in_flight = orchestrator.in_flight
    return IngestionOverview(
        started=orchestrator.started,
        pipelines=[
            PipelineOut(
                name=p.name,
                description=p.description,
                interval_ms=p.interval_ms,
                in_flight=p.name in in_flight,
            )
            for p in orchestrator.pipelines
        ],
    )


async def _run_in_background(orchestrator: AnalyticsIngestionOrchestrator, pipeline: str) -> None:
    try:
        await orchestrator.run_pipeline(pipeline)
    except Exception:
        logger.exception("[AnalyticsIngestion] On-demand run failed pipeline=%s", pipeline)


@router.post(
    "/{pipeline}/run",
    response_model=RunAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_pipeline(
    pipeline: str,
    background: BackgroundTasks,
    service: IngestionService = Depends(get_service),
):
    orchestrator = service.orchestrator
    if pipeline not in {p.name for p in orchestrator.pipelines}:
        raise HTTPException(status_code=404, detail=str(PipelineNotFoundError(pipeline)))
    if pipeline in orchestrator.in_flight:
        raise HTTPException(status_code=409, detail=f"pipeline already in flight: {pipeline}")

    background.add_task(_run_in_background, orchestrator, pipeline)
    logger.info("[AnalyticsIngestion] On-demand run accepted pipeline=%s", pipeline)
    return RunAccepted(pipeline=pipeline)


@router.get("/anomalies", response_model=AnomalyList)
async def list_anomalies(
    source: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    resolved: Optional[bool] = Query(None),
    service: IngestionService = Depends(get_service),
):
    try:
        rows = await service.store.list_analytics_anomalies(
            source=source.strip() if source else None,
            severity=severity.strip() if severity else None,
            resolved=resolved,
        )
    except StorageError:
        raise HTTPException(status_code=503, detail="anomalies unavailable")
    return AnomalyList(data=[AnomalyOut(**asdict(r)) for r in rows])


@router.post("/anomalies/{anomaly_id}/resolve", response_model=AnomalyOut)
async def resolve_anomaly(
    anomaly_id: int = Path(..., ge=1),
    service: IngestionService = Depends(get_service),
):
    try:
        row = await service.store.resolve_analytics_anomaly(anomaly_id)
    except StorageError:
        raise HTTPException(status_code=503, detail="anomalies unavailable")
    if row is None:
        raise HTTPException(status_code=404, detail=f"unknown anomaly: {anomaly_id}")
    logger.info("[AnalyticsIngestion] Anomaly resolved id=%d source=%s", row.id, row.source)
    return AnomalyOut(**asdict(row))
