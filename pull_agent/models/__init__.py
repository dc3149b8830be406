"""
Data models for the pull agent.
"""

from pull_agent.models.canary import (
    CanaryAnalysis,
    CanaryConfig,
    CanaryRollout,
    CanaryStatus,
    MetricSample,
    TrafficMetrics,
)
from pull_agent.models.deployment import (
    CommitInfo,
    Deployment,
    DeploymentOptions,
    DeploymentRequestResult,
    Phase,
    RollbackResult,
    next_deployment_id,
)
from pull_agent.models.notification import AgentEvent, NotificationEvent

__all__ = [
    "AgentEvent",
    "CanaryAnalysis",
    "CanaryConfig",
    "CanaryRollout",
    "CanaryStatus",
    "CommitInfo",
    "Deployment",
    "DeploymentOptions",
    "DeploymentRequestResult",
    "MetricSample",
    "NotificationEvent",
    "Phase",
    "RollbackResult",
    "TrafficMetrics",
    "next_deployment_id",
]
