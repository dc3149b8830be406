"""
Tests for canary analysis and metrics providers.
"""

import random
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from pull_agent.canary.metrics import (
    PrometheusMetricsProvider,
    SimulatedMetricsProvider,
    analyze,
    render_query,
)
from pull_agent.models.canary import CanaryRollout, MetricSample, TrafficMetrics

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def rollout(**overrides):
    values = dict(
        id="web",
        canary_image="app:v2",
        stable_image="app:v1",
        current_percent=10,
        target_percent=50,
        increment_percent=10,
        increment_interval_minutes=5,
        error_rate_threshold=5,
        latency_threshold_ms=500,
        status="progressing",
        started_at=T0.isoformat(),
    )
    values.update(overrides)
    return CanaryRollout(**values)


def sample(requests=100, errors=0, latency=100.0):
    return MetricSample(
        canary=TrafficMetrics(requests=requests, errors=errors, avg_latency_ms=latency),
        stable=TrafficMetrics(requests=1000, errors=1, avg_latency_ms=90),
    )


class TestTrafficMetrics:
    def test_error_rate(self):
        assert TrafficMetrics(requests=200, errors=10).error_rate == 5.0

    def test_error_rate_without_traffic(self):
        assert TrafficMetrics(requests=0, errors=0).error_rate == 0.0

    def test_error_rate_serialized(self):
        assert TrafficMetrics(requests=10, errors=1).model_dump()["error_rate"] == 10.0


class TestAnalyze:
    """Test the rollback and progression decision."""

    def test_healthy_before_interval(self):
        analysis = analyze(rollout(), sample(), T0 + timedelta(minutes=2))

        assert analysis.is_healthy
        assert not analysis.should_rollback
        assert not analysis.should_progress

    def test_healthy_after_interval(self):
        analysis = analyze(rollout(), sample(), T0 + timedelta(minutes=5))
        assert analysis.should_progress

    def test_interval_measured_from_last_progress(self):
        r = rollout(last_progress_at=(T0 + timedelta(minutes=4)).isoformat())
        assert not analyze(r, sample(), T0 + timedelta(minutes=6)).should_progress
        assert analyze(r, sample(), T0 + timedelta(minutes=9)).should_progress

    def test_no_progress_at_target(self):
        r = rollout(current_percent=50)
        assert not analyze(r, sample(), T0 + timedelta(hours=1)).should_progress

    def test_threshold_is_strict(self):
        analysis = analyze(rollout(), sample(errors=5, latency=500), T0)
        assert analysis.is_healthy

    def test_error_rate_breach(self):
        analysis = analyze(rollout(), sample(errors=8), T0 + timedelta(minutes=10))

        assert not analysis.is_healthy
        assert analysis.should_rollback
        assert not analysis.should_progress
        assert analysis.reason == "Error rate 8.00% exceeds threshold 5%"

    def test_latency_breach(self):
        analysis = analyze(rollout(), sample(latency=750), T0)

        assert analysis.should_rollback
        assert analysis.reason == "Latency 750ms exceeds threshold 500ms"

    def test_error_rate_wins(self):
        analysis = analyze(rollout(), sample(errors=90, latency=9000), T0)
        assert analysis.reason.startswith("Error rate")


class TestSimulatedMetricsProvider:
    @pytest.mark.asyncio
    async def test_stays_healthy(self):
        provider = SimulatedMetricsProvider(rng=random.Random(42))
        r = rollout()

        for _ in range(50):
            s = await provider.collect(r)
            assert s.canary_percent == 10
            assert 50 <= s.canary.requests < 150
            assert s.canary.errors <= 2
            assert s.canary.error_rate <= 4
            assert 50 <= s.canary.avg_latency_ms <= 150
            assert not analyze(r, s, T0).should_rollback


class TestPrometheusMetricsProvider:
    """Test PromQL queries against a mocked Prometheus."""

    VALUES = {
        ("canary", "requests"): "120",
        ("canary", "errors"): "6",
        ("canary", "avg_latency_ms"): "210.5",
        ("stable", "requests"): "980",
        ("stable", "errors"): "NaN",
        ("stable", "avg_latency_ms"): "95",
    }

    def _handler(self, seen):
        def handler(request: httpx.Request) -> httpx.Response:
            query = request.url.params["query"]
            seen.append(query)
            track = "canary" if 'track="canary"' in query else "stable"
            if "status=~" in query:
                field = "errors"
            elif "duration_seconds_sum" in query:
                field = "avg_latency_ms"
            elif "http_requests_total" in query:
                field = "requests"
            else:
                return httpx.Response(200, json={"status": "success", "data": {"result": []}})
            value = self.VALUES[(track, field)]
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "data": {"resultType": "vector", "result": [{"value": [0, value]}]},
                },
            )

        return handler

    @pytest.mark.asyncio
    async def test_collect(self):
        seen = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(self._handler(seen)))
        provider = PrometheusMetricsProvider(
            "http://prometheus:9090/", queries={"p99_latency_ms": "vector(0)"}, client=client
        )

        s = await provider.collect(rollout())
        await provider.close()

        assert s.canary.requests == 120
        assert s.canary.errors == 6
        assert s.canary.error_rate == 5.0
        assert s.canary.avg_latency_ms == 210.5
        assert s.canary.healthy_pods == 0
        assert s.stable.requests == 980
        assert s.stable.errors == 0
        assert all('deployment="web"' in q for q in seen if "deployment" in q)
        assert "vector(0)" in seen

    @pytest.mark.asyncio
    async def test_query_error_status(self):
        def handler(request):
            return httpx.Response(200, json={"status": "error", "error": "bad query"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = PrometheusMetricsProvider("http://prometheus:9090", client=client)

        with pytest.raises(httpx.HTTPError, match="bad query"):
            await provider.query("up")
        await provider.close()

    @pytest.mark.asyncio
    async def test_query_http_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        provider = PrometheusMetricsProvider("http://prometheus:9090", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await provider.query("up")
        await provider.close()

    def test_render_query(self):
        assert render_query('up{deployment="{deployment}",track="{track}"}', "web", "canary") == (
            'up{deployment="web",track="canary"}'
        )
