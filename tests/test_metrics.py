"""Metrics aggregator and collector tests."""
import httpx
import pytest

from fleet.common.errors import StaleMetric
from fleet.common.models import MetricSample
from fleet.manager.metrics import MetricsAggregator, MetricsCollector


class TestMetricsAggregator:
    def test_no_samples_is_unknown_not_zero(self, clock):
        aggregator = MetricsAggregator(window_s=60, clock=clock)
        assert aggregator.windowed_mean("cpu") is None
        with pytest.raises(StaleMetric):
            aggregator.mean_or_raise("cpu")

    def test_mean_over_instances(self, clock):
        aggregator = MetricsAggregator(window_s=60, clock=clock)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.2, requests=4))
        aggregator.record("i-2", MetricSample("i-2", clock(), 0.6, requests=8))

        assert aggregator.windowed_mean("cpu") == pytest.approx(0.4)
        assert aggregator.windowed_mean("requests") == pytest.approx(6.0)
        assert aggregator.windowed_mean("cpu", instance_ids=["i-2"]) == pytest.approx(0.6)
        assert aggregator.windowed_mean("cpu", instance_ids=["i-3"]) is None

    def test_old_samples_are_evicted(self, clock):
        aggregator = MetricsAggregator(window_s=60, clock=clock)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.9))
        clock.advance(30)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.1))
        assert aggregator.windowed_mean("cpu") == pytest.approx(0.5)

        clock.advance(31)
        assert aggregator.windowed_mean("cpu") == pytest.approx(0.1)
        assert aggregator.sample_count("i-1") == 1

        clock.advance(60)
        assert aggregator.windowed_mean("cpu") is None
        assert aggregator.sample_count("i-1") == 0

    def test_requested_window_is_clamped(self, clock):
        aggregator = MetricsAggregator(window_s=60, clock=clock)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.8))
        clock.advance(20)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.2))

        assert aggregator.windowed_mean("cpu", window=10) == pytest.approx(0.2)
        clock.advance(50)
        # asking for more than the configured window never sees evicted data
        assert aggregator.windowed_mean("cpu", window=600) == pytest.approx(0.2)

    def test_forget(self, clock):
        aggregator = MetricsAggregator(window_s=60, clock=clock)
        aggregator.record("i-1", MetricSample("i-1", clock(), 0.5))
        aggregator.forget("i-1")
        assert aggregator.windowed_mean("cpu") is None

    def test_unknown_metric(self, clock):
        with pytest.raises(ValueError):
            MetricsAggregator(window_s=60, clock=clock).windowed_mean("memory")


class TestMetricsCollector:
    @pytest.mark.asyncio
    async def test_collects_cpu_and_request_counts(self, harness):
        a = await harness.add_instance()
        b = await harness.add_instance()
        c = await harness.add_instance(healthy=False)
        provider = {i.provider_id: i.instance_id for i in harness.registry.snapshot()}
        cpu = {a: 0.5, b: 1.7}

        def handler(request):
            provider_id = request.url.path.split("/")[2]
            instance_id = provider[provider_id]
            if instance_id not in cpu:
                return httpx.Response(500)
            return httpx.Response(200, json={"cpu": cpu[instance_id]})

        collector = MetricsCollector(
            harness.registry,
            harness.aggregator,
            harness.settings,
            request_counts=lambda: {a: 7},
            transport=httpx.MockTransport(handler),
            clock=harness.clock,
        )
        assert await collector.collect_once() == 2

        assert harness.aggregator.windowed_mean("cpu", instance_ids=[a]) == pytest.approx(0.5)
        # clamped to the whole host
        assert harness.aggregator.windowed_mean("cpu", instance_ids=[b]) == pytest.approx(1.0)
        assert harness.aggregator.windowed_mean("requests", instance_ids=[a]) == pytest.approx(7.0)
        assert harness.aggregator.sample_count(c) == 0

    @pytest.mark.asyncio
    async def test_unreachable_agent_is_skipped(self, harness):
        await harness.add_instance()

        def handler(request):
            raise httpx.ConnectError("agent down", request=request)

        collector = MetricsCollector(
            harness.registry,
            harness.aggregator,
            harness.settings,
            transport=httpx.MockTransport(handler),
            clock=harness.clock,
        )
        assert await collector.collect_once() == 0
        assert harness.aggregator.windowed_mean("cpu") is None

    @pytest.mark.asyncio
    async def test_deregistered_instance_samples_are_dropped(self, harness):
        a = await harness.add_instance()
        harness.record_load(0.5)
        assert harness.aggregator.sample_count(a) == 1

        await harness.registry.deregister(a)
        assert harness.aggregator.sample_count(a) == 0


class TestStaleMetricDecision:
    @pytest.mark.asyncio
    async def test_expired_samples_give_no_data(self, harness, clock):
        await harness.add_instance()
        await harness.add_instance()
        harness.record_load(0.95)

        clock.advance(121)
        decision = await harness.controller.tick()
        assert decision.reason.value == "no_data"
        assert decision.metric is None
