"""Named pipeline strategies, in scheduling order."""

from __future__ import annotations

from typing import Dict, Iterable, List

from common.config import AnalyticsSettings

from .errors import PipelineNotFoundError
from .models import PipelineDefinition
from .pipelines import (
    create_agent_performance_pipeline,
    create_anomaly_pipeline,
    create_quality_pipeline,
    create_repository_pipeline,
    create_user_engagement_pipeline,
)


def create_pipeline_registry(settings: AnalyticsSettings) -> List[PipelineDefinition]:
    return [
        create_quality_pipeline(settings),
        create_agent_performance_pipeline(settings),
        create_user_engagement_pipeline(settings),
        create_repository_pipeline(settings),
        create_anomaly_pipeline(settings),
    ]


def index_pipelines(definitions: Iterable[PipelineDefinition]) -> Dict[str, PipelineDefinition]:
    index: Dict[str, PipelineDefinition] = {}
    for definition in definitions:
        if definition.name in index:
            raise ValueError(f"duplicate pipeline name: {definition.name}")
        index[definition.name] = definition
    return index


def lookup(index: Dict[str, PipelineDefinition], name: str) -> PipelineDefinition:
    try:
        return index[name]
    except KeyError:
        raise PipelineNotFoundError(name) from None
