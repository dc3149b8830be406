"""
Canary deployments: progressive traffic shifting with metric analysis.
"""

from pull_agent.canary.containers import CanaryContainers, DockerCanaryContainers
from pull_agent.canary.controller import CanaryController
from pull_agent.canary.metrics import (
    MetricsProvider,
    PrometheusMetricsProvider,
    SimulatedMetricsProvider,
    analyze,
)
from pull_agent.canary.traffic import NginxTrafficRouter, NoopTrafficRouter, TrafficRouter

__all__ = [
    "CanaryContainers",
    "CanaryController",
    "DockerCanaryContainers",
    "MetricsProvider",
    "NginxTrafficRouter",
    "NoopTrafficRouter",
    "PrometheusMetricsProvider",
    "SimulatedMetricsProvider",
    "TrafficRouter",
    "analyze",
]
