"""Pipeline strategies, one module per derived record family.

- quality: per-stage quality scores
- agent_performance: per-stage throughput/latency/rates
- repository: commit velocity, hotspots, coverage drift
- user_engagement: global engagement aggregate
- anomaly: baseline vs. current statistical checks
"""

from .agent_performance import create_agent_performance_pipeline
from .anomaly import create_anomaly_pipeline
from .quality import create_quality_pipeline
from .repository import create_repository_pipeline
from .user_engagement import create_user_engagement_pipeline

__all__ = [
    "create_quality_pipeline",
    "create_agent_performance_pipeline",
    "create_repository_pipeline",
    "create_user_engagement_pipeline",
    "create_anomaly_pipeline",
]
