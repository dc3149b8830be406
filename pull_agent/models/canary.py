"""
Canary rollout data models.

CanaryConfig is the validated start request. CanaryRollout is the live
campaign state owned by the canary controller, and MetricSample is one
observation cycle of canary versus stable traffic.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic.alias_generators import to_camel

CanaryStatus = Literal[
    "initializing",
    "progressing",
    "paused",
    "promoting",
    "promoted",
    "rolling_back",
    "rolled_back",
    "failed",
]

TERMINAL_STATUSES = frozenset({"promoted", "rolled_back", "failed"})
ANALYSIS_STATUSES = frozenset({"progressing", "paused"})


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CanaryConfig(BaseModel):
    """
    Start request for a canary rollout.

    Accepts snake_case or camelCase keys (``canary_image`` or ``canaryImage``)
    and rejects anything else.
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    deployment_id: str = Field(
        ..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9._-]+$", description="Rollout id"
    )
    canary_image: str = Field(..., min_length=1, description="Image under evaluation")
    stable_image: str = Field(..., min_length=1, description="Image currently serving traffic")
    initial_percent: int = Field(default=10, ge=0, le=100)
    target_percent: int = Field(default=100, ge=0, le=100)
    increment_percent: int = Field(default=10, gt=0, le=100)
    increment_interval_minutes: float = Field(default=5, ge=0)
    error_rate_threshold: float = Field(default=5, ge=0, description="Percent of failed requests")
    latency_threshold_ms: float = Field(default=1000, ge=0, description="Average latency limit")
    auto_rollback_enabled: bool = True

    @model_validator(mode="after")
    def validate_percent_range(self) -> "CanaryConfig":
        """Initial traffic can never exceed the target."""
        if self.initial_percent > self.target_percent:
            raise ValueError(
                f"initial_percent ({self.initial_percent}) cannot exceed "
                f"target_percent ({self.target_percent})"
            )
        return self


class TrafficMetrics(BaseModel):
    """Request and pod statistics for one side of the traffic split."""

    requests: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    avg_latency_ms: float = Field(default=0.0, ge=0)
    p99_latency_ms: float = Field(default=0.0, ge=0)
    healthy_pods: int = Field(default=0, ge=0)
    total_pods: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def error_rate(self) -> float:
        """Errors as a percentage of requests; 0 when there was no traffic."""
        if self.requests <= 0:
            return 0.0
        return self.errors / self.requests * 100


class MetricSample(BaseModel):
    """One analysis observation for a rollout."""

    timestamp: str = Field(default_factory=_utc_now)
    canary_percent: int = 0
    canary: TrafficMetrics
    stable: TrafficMetrics


class CanaryAnalysis(BaseModel):
    """Decision derived from a single MetricSample."""

    is_healthy: bool = True
    should_rollback: bool = False
    should_progress: bool = False
    reason: str = ""


class CanaryRollout(BaseModel):
    """A progressive-delivery campaign for one application."""

    id: str
    canary_image: str
    stable_image: str
    current_percent: int = Field(default=0, ge=0, le=100)
    target_percent: int = Field(default=100, ge=0, le=100)
    increment_percent: int = Field(default=10, gt=0)
    increment_interval_minutes: float = 5
    error_rate_threshold: float = 5
    latency_threshold_ms: float = 1000
    auto_rollback_enabled: bool = True
    status: CanaryStatus = "initializing"
    started_at: str = Field(default_factory=_utc_now)
    ended_at: Optional[str] = None
    last_progress_at: Optional[str] = None
    rollback_reason: Optional[str] = None
    error: Optional[str] = None
    metrics: List[MetricSample] = Field(default_factory=list)

    @classmethod
    def from_config(cls, config: CanaryConfig) -> "CanaryRollout":
        return cls(
            id=config.deployment_id,
            canary_image=config.canary_image,
            stable_image=config.stable_image,
            target_percent=config.target_percent,
            increment_percent=config.increment_percent,
            increment_interval_minutes=config.increment_interval_minutes,
            error_rate_threshold=config.error_rate_threshold,
            latency_threshold_ms=config.latency_threshold_ms,
            auto_rollback_enabled=config.auto_rollback_enabled,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def record_sample(self, sample: MetricSample, limit: int = 100) -> None:
        """Append a sample, keeping only the most recent ``limit`` entries."""
        self.metrics.append(sample)
        if len(self.metrics) > limit:
            del self.metrics[: len(self.metrics) - limit]

    def mark_ended(self) -> None:
        self.ended_at = _utc_now()

    def summary(self) -> Dict[str, Any]:
        """Compact view used by the rollout list endpoint."""
        return {
            "id": self.id,
            "status": self.status,
            "current_percent": self.current_percent,
            "target_percent": self.target_percent,
            "canary_image": self.canary_image,
            "stable_image": self.stable_image,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "metrics_count": len(self.metrics),
        }
