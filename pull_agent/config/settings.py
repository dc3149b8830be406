"""
Configuration settings for the pull agent.

Configuration is read from a YAML file and then overridden by environment
variables, so a container can be configured entirely through its environment.
Unknown keys are rejected at load time.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from pull_agent.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class _Section(BaseModel):
    """Base for configuration sections: unknown keys are an error."""

    model_config = ConfigDict(extra="forbid")


class RepositoryConfig(_Section):
    """Working tree and tracked branch."""

    path: str = Field(default="/app/repo", description="Path to the git working tree")
    remote: str = Field(default="origin", description="Git remote to pull from")
    branch: str = Field(default="main", description="Tracked branch")


class GitHubConfig(_Section):
    """GitHub repository used for webhook matching and Actions integration."""

    repo: str = Field(default="", description="owner/name of the GitHub repository")
    token: Optional[str] = Field(default=None, description="Token for the GitHub API")
    api_url: str = Field(default="https://api.github.com", description="GitHub API base URL")


class SecurityConfig(_Section):
    """Shared secrets for webhooks and manual control endpoints."""

    webhook_secret: Optional[str] = Field(
        default=None, description="HMAC secret shared with the GitHub webhook"
    )
    require_webhook_signature: bool = Field(
        default=False,
        description="Reject webhooks when no secret is configured instead of accepting them",
    )
    deploy_secret: Optional[str] = Field(
        default=None, description="Secret required by mutating control endpoints"
    )


class PollingConfig(_Section):
    """Remote revision polling."""

    interval_seconds: int = Field(default=300, ge=0, description="0 disables polling")
    initial_delay_seconds: int = Field(default=30, ge=0, description="Delay before first poll")


class AppConfig(_Section):
    """The application container managed by the agent."""

    compose_service: str = Field(default="app", description="docker compose service to build")
    compose_file: Optional[str] = Field(
        default=None, description="Compose file, relative to the repository path"
    )
    container_name: str = Field(
        default="devops-dashboard", description="Name (or name fragment) of the app container"
    )
    health_check_url: str = Field(
        default="http://localhost:3000/api/trpc/health.check",
        description="Liveness endpoint polled after a restart",
    )


class DeploymentConfig(_Section):
    """Deployment state machine tuning."""

    max_consecutive_failures: int = Field(
        default=3, ge=1, description="Failures before a critical notification is sent"
    )
    rollback_enabled: bool = Field(default=True, description="Roll back failed deployments")
    history_limit: int = Field(default=50, ge=1, description="Deployments kept in history")
    pull_timeout_seconds: float = Field(default=60, gt=0)
    build_timeout_seconds: float = Field(default=600, gt=0)
    restart_timeout_seconds: float = Field(default=120, gt=0)
    health_check_timeout_seconds: float = Field(default=60, gt=0)
    health_check_interval_seconds: float = Field(default=5, gt=0)
    health_request_timeout_seconds: float = Field(default=5, gt=0)


class NginxTrafficConfig(_Section):
    """Weighted nginx upstream used to split traffic between stable and canary."""

    enabled: bool = Field(default=False, description="Manage an nginx upstream for canaries")
    upstream_path: str = Field(
        default="/etc/nginx/conf.d/canary-upstream.conf",
        description="Include file rewritten on every traffic change",
    )
    container_name: str = Field(default="nginx", description="nginx container to reload")
    upstream_name: str = Field(default="app_backend", description="Name of the upstream block")
    stable_server: str = Field(default="devops-dashboard:3000")
    canary_server: str = Field(default="devops-dashboard-canary:3000")


class CanaryConfigSettings(_Section):
    """Progressive delivery controller settings."""

    analysis_interval_seconds: float = Field(default=30, gt=0)
    max_metric_samples: int = Field(default=100, ge=1)
    max_finished_rollouts: int = Field(
        default=50, ge=0, description="Finished rollouts kept for the API before eviction"
    )
    prometheus_url: Optional[str] = Field(
        default=None, description="Prometheus base URL; simulated metrics are used when unset"
    )
    prometheus_timeout_seconds: float = Field(default=10, gt=0)
    nginx: NginxTrafficConfig = Field(default_factory=NginxTrafficConfig)


class NotificationConfig(_Section):
    """Notification channel endpoints and credentials."""

    webhook_url: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    timeout_seconds: float = Field(default=10, gt=0)
    queue_size: int = Field(default=100, ge=1)


class ServerConfig(_Section):
    """HTTP listener."""

    host: str = "0.0.0.0"
    port: int = Field(default=9000, ge=1, le=65535)


class StorageConfig(_Section):
    """State persistence."""

    data_path: str = Field(default="/app/data", description="Directory for state.json")
    save_interval_seconds: float = Field(default=60, gt=0)


class LoggingSettings(_Section):
    """Log output."""

    log_dir: str = Field(default="/var/log/pull-agent")
    console_level: str = Field(default="INFO")
    use_json: bool = False
    audit_log_path: Optional[str] = Field(
        default=None, description="JSONL audit trail; defaults to <log_dir>/audit.jsonl"
    )

    @model_validator(mode="after")
    def validate_level(self) -> "LoggingSettings":
        """Normalise and check the console level name."""
        level = self.console_level.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.console_level}")
        self.console_level = level
        return self


def _as_bool(value: str) -> bool:
    return value.strip().lower() not in ("false", "0", "no", "off", "")


# Environment variable -> (section, field, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "GITHUB_REPO": ("github", "repo", str),
    "GITHUB_TOKEN": ("github", "token", str),
    "GITHUB_BRANCH": ("repository", "branch", str),
    "REPO_PATH": ("repository", "path", str),
    "GITHUB_WEBHOOK_SECRET": ("security", "webhook_secret", str),
    "REQUIRE_WEBHOOK_SIGNATURE": ("security", "require_webhook_signature", _as_bool),
    "DEPLOY_SECRET": ("security", "deploy_secret", str),
    "POLL_INTERVAL": ("polling", "interval_seconds", int),
    "WEBHOOK_PORT": ("server", "port", int),
    "APP_CONTAINER": ("app", "container_name", str),
    "APP_SERVICE": ("app", "compose_service", str),
    "HEALTH_CHECK_URL": ("app", "health_check_url", str),
    "MAX_RETRIES": ("deployment", "max_consecutive_failures", int),
    "HEALTH_CHECK_TIMEOUT": ("deployment", "health_check_timeout_seconds", float),
    "ROLLBACK_ENABLED": ("deployment", "rollback_enabled", _as_bool),
    "NOTIFICATION_WEBHOOK": ("notifications", "webhook_url", str),
    "SLACK_WEBHOOK": ("notifications", "slack_webhook_url", str),
    "TELEGRAM_BOT_TOKEN": ("notifications", "telegram_bot_token", str),
    "TELEGRAM_CHAT_ID": ("notifications", "telegram_chat_id", str),
    "DATA_PATH": ("storage", "data_path", str),
    "PROMETHEUS_URL": ("canary", "prometheus_url", str),
    "LOG_DIR": ("logging", "log_dir", str),
}


class PullAgentConfig(_Section):
    """Complete pull agent configuration."""

    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    app: AppConfig = Field(default_factory=AppConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    canary: CanaryConfigSettings = Field(default_factory=CanaryConfigSettings)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_file(
        cls, path: str, environ: Optional[Mapping[str, str]] = None
    ) -> "PullAgentConfig":
        """
        Load configuration from a YAML file, then apply environment overrides.

        A missing file is not an error: defaults plus environment are used.

        Args:
            path: YAML configuration file
            environ: Environment mapping, defaults to os.environ

        Raises:
            ConfigurationError: If the file cannot be parsed or fails validation
        """
        data: Dict[str, Any] = {}
        config_path = Path(path)
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    loaded = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}")
            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigurationError(f"Configuration root must be a mapping: {path}")
            data = loaded or {}
        else:
            logger.info(f"Configuration file {path} not found, using defaults")

        return cls.from_dict(data, environ=environ)

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
    ) -> "PullAgentConfig":
        """Build a config from a plain mapping and environment overrides."""
        merged = apply_env_overrides(data, os.environ if environ is None else environ)
        try:
            return cls(**merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    def save(self, path: str) -> None:
        """Write configuration as YAML, creating parent directories."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)

    @property
    def state_file(self) -> Path:
        """Location of the persisted state snapshot."""
        return Path(self.storage.data_path) / "state.json"


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Return a copy of ``data`` with known environment variables applied.

    Empty values are ignored so that ``FOO=`` in a compose file does not
    clobber a value from the config file.
    """
    merged: Dict[str, Any] = {
        key: dict(value) if isinstance(value, dict) else value for key, value in data.items()
    }
    for env_name, (section, field, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid value for {env_name}: {raw!r}")
        section_data = merged.get(section)
        if not isinstance(section_data, dict):
            section_data = {}
            merged[section] = section_data
        section_data[field] = value
    return merged
