"""Configuration package for the pull agent."""

from pull_agent.config.settings import (
    AppConfig,
    CanaryConfigSettings,
    DeploymentConfig,
    NginxTrafficConfig,
    NotificationConfig,
    PullAgentConfig,
)

__all__ = [
    "AppConfig",
    "CanaryConfigSettings",
    "DeploymentConfig",
    "NginxTrafficConfig",
    "NotificationConfig",
    "PullAgentConfig",
]
