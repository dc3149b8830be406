"""
Deployment of the tracked branch: orchestration, rollback, app containers and state.
"""

from pull_agent.deployment.containers import AppContainers, connect_docker
from pull_agent.deployment.orchestrator import DeploymentGate, DeploymentOrchestrator
from pull_agent.deployment.rollback import RollbackController
from pull_agent.deployment.state import AgentState, StateStore

__all__ = [
    "AgentState",
    "AppContainers",
    "DeploymentGate",
    "DeploymentOrchestrator",
    "RollbackController",
    "StateStore",
    "connect_docker",
]
