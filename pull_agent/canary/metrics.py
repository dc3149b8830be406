"""
Canary metrics collection and analysis.

A MetricsProvider returns one MetricSample per analysis tick; ``analyze``
turns a sample into a CanaryAnalysis. Error rate is checked before latency
and the first breach wins.
"""

import logging
import math
import random
from datetime import datetime
from typing import Dict, Optional

import httpx

from pull_agent.models.canary import CanaryAnalysis, CanaryRollout, MetricSample, TrafficMetrics

logger = logging.getLogger(__name__)


def analyze(rollout: CanaryRollout, sample: MetricSample, now: datetime) -> CanaryAnalysis:
    """
    Decide what the controller should do after ``sample``.

    Args:
        rollout: Rollout being evaluated (thresholds, progress timestamps)
        sample: Latest observation
        now: Current time, timezone-aware

    Returns:
        CanaryAnalysis; a threshold breach sets should_rollback and returns immediately
    """
    canary = sample.canary

    if canary.error_rate > rollout.error_rate_threshold:
        return CanaryAnalysis(
            is_healthy=False,
            should_rollback=True,
            reason=(
                f"Error rate {canary.error_rate:.2f}% exceeds threshold "
                f"{rollout.error_rate_threshold:g}%"
            ),
        )

    if canary.avg_latency_ms > rollout.latency_threshold_ms:
        return CanaryAnalysis(
            is_healthy=False,
            should_rollback=True,
            reason=(
                f"Latency {canary.avg_latency_ms:.0f}ms exceeds threshold "
                f"{rollout.latency_threshold_ms:g}ms"
            ),
        )

    analysis = CanaryAnalysis(is_healthy=True, reason="Metrics healthy")
    since = datetime.fromisoformat(rollout.last_progress_at or rollout.started_at)
    elapsed = (now - since).total_seconds()
    if (
        elapsed >= rollout.increment_interval_minutes * 60
        and rollout.current_percent < rollout.target_percent
    ):
        analysis.should_progress = True
        analysis.reason = "Metrics healthy, ready for next increment"
    return analysis


class MetricsProvider:
    """Source of canary and stable traffic statistics."""

    name = "metrics"

    async def collect(self, rollout: CanaryRollout) -> MetricSample:
        raise NotImplementedError

    async def close(self) -> None:
        """Release any held resources."""


class SimulatedMetricsProvider(MetricsProvider):
    """
    Random but plausible metrics for environments without Prometheus.

    Canary errors stay at or below 4% of requests and latency well under the
    default thresholds, so a rollout under simulation stays healthy and
    progresses on schedule.
    """

    name = "simulated"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def collect(self, rollout: CanaryRollout) -> MetricSample:
        rng = self.rng
        return MetricSample(
            canary_percent=rollout.current_percent,
            canary=TrafficMetrics(
                requests=rng.randint(50, 149),
                errors=rng.randint(0, 2),
                avg_latency_ms=50 + rng.random() * 100,
                p99_latency_ms=100 + rng.random() * 200,
                healthy_pods=1,
                total_pods=1,
            ),
            stable=TrafficMetrics(
                requests=rng.randint(450, 1349),
                errors=rng.randint(0, 9),
                avg_latency_ms=50 + rng.random() * 50,
                p99_latency_ms=100 + rng.random() * 100,
                healthy_pods=3,
                total_pods=3,
            ),
        )


DEFAULT_QUERIES: Dict[str, str] = {
    "requests": 'sum(increase(http_requests_total{deployment="{deployment}",track="{track}"}[1m]))',
    "errors": (
        'sum(increase(http_requests_total{deployment="{deployment}",track="{track}",'
        'status=~"5.."}[1m]))'
    ),
    "avg_latency_ms": (
        "sum(rate(http_request_duration_seconds_sum"
        '{deployment="{deployment}",track="{track}"}[1m]))'
        ' / sum(rate(http_request_duration_seconds_count{deployment="{deployment}",'
        'track="{track}"}[1m])) * 1000'
    ),
    "p99_latency_ms": (
        "histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket"
        '{deployment="{deployment}",track="{track}"}[1m])) by (le)) * 1000'
    ),
    "healthy_pods": 'count(up{deployment="{deployment}",track="{track}"} == 1)',
    "total_pods": 'count(up{deployment="{deployment}",track="{track}"})',
}


def render_query(template: str, deployment: str, track: str) -> str:
    """Fill the ``{deployment}`` and ``{track}`` placeholders of a PromQL template."""
    return template.replace("{deployment}", deployment).replace("{track}", track)


class PrometheusMetricsProvider(MetricsProvider):
    """
    Instant PromQL queries against a Prometheus server.

    Args:
        base_url: Prometheus base URL (``/api/v1/query`` is appended)
        timeout: Per-request timeout in seconds
        queries: PromQL templates keyed by TrafficMetrics field
        client: Optional pre-built client (tests pass one with a mock transport)
    """

    name = "prometheus"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        queries: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.queries = dict(DEFAULT_QUERIES)
        if queries:
            self.queries.update(queries)
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def query(self, promql: str) -> float:
        """
        Run an instant query and return the first sample's value.

        Empty results and NaN are reported as 0.

        Raises:
            httpx.HTTPError: On transport failure or a non-2xx response
        """
        response = await self._client.get(f"{self.base_url}/api/v1/query", params={"query": promql})
        response.raise_for_status()
        data = response.json()
        if data.get("status") != "success":
            raise httpx.HTTPError(f"Prometheus query failed: {data.get('error', 'unknown error')}")
        result = data.get("data", {}).get("result", [])
        if not result:
            return 0.0
        value = float(result[0]["value"][1])
        return 0.0 if math.isnan(value) or math.isinf(value) else value

    async def _track(self, rollout: CanaryRollout, track: str) -> TrafficMetrics:
        values = {}
        for field, template in self.queries.items():
            values[field] = await self.query(render_query(template, rollout.id, track))
        return TrafficMetrics(
            requests=int(round(values["requests"])),
            errors=int(round(values["errors"])),
            avg_latency_ms=max(0.0, values["avg_latency_ms"]),
            p99_latency_ms=max(0.0, values["p99_latency_ms"]),
            healthy_pods=int(values["healthy_pods"]),
            total_pods=int(values["total_pods"]),
        )

    async def collect(self, rollout: CanaryRollout) -> MetricSample:
        return MetricSample(
            canary_percent=rollout.current_percent,
            canary=await self._track(rollout, "canary"),
            stable=await self._track(rollout, "stable"),
        )

    async def close(self) -> None:
        await self._client.aclose()
