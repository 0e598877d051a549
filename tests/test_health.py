"""Health checker and HTTP prober tests."""
import asyncio

import httpx
import pytest

from fleet.common.errors import ProbeFailed, ProbeRefused, ProbeTimeout
from fleet.common.events import HealthEvent
from fleet.common.models import Endpoint, HealthVerdict, Instance, InstanceState
from fleet.manager.health import HttpProber


def _instance() -> Instance:
    return Instance(
        "i-1", Endpoint("10.0.0.9", 8081, 8080), 1, InstanceState.PENDING, 0.0, 0.0
    )


class TestHttpProber:
    @pytest.mark.asyncio
    async def test_success_goes_through_router_facing_port(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "ok"})

        prober = HttpProber(timeout=1.0, transport=httpx.MockTransport(handler))
        await prober.probe(_instance(), "/healthz")
        assert seen == ["http://10.0.0.9:8081/healthz"]

    @pytest.mark.asyncio
    async def test_non_success_status_fails(self):
        prober = HttpProber(
            timeout=1.0,
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        with pytest.raises(ProbeFailed):
            await prober.probe(_instance(), "/health")

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        prober = HttpProber(timeout=1.0, transport=httpx.MockTransport(handler))
        with pytest.raises(ProbeRefused):
            await prober.probe(_instance(), "/health")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        prober = HttpProber(timeout=1.0, transport=httpx.MockTransport(handler))
        with pytest.raises(ProbeTimeout):
            await prober.probe(_instance(), "/health")


class TestHealthChecker:
    @pytest.mark.asyncio
    async def test_pending_promoted_after_n_successes(self, harness):
        instance_id = await harness.add_instance(healthy=False)
        instance = harness.registry.get(instance_id)

        await harness.checker.probe_once(instance)
        assert harness.checker.verdict(instance_id) == HealthVerdict.UNKNOWN
        assert harness.registry.get(instance_id).state == InstanceState.PENDING
        assert instance_id not in harness.routable_ids()

        await harness.checker.probe_once(instance)
        assert harness.checker.verdict(instance_id) == HealthVerdict.HEALTHY
        assert harness.registry.get(instance_id).state == InstanceState.IN_SERVICE
        assert instance_id in harness.routable_ids()

    @pytest.mark.asyncio
    async def test_probe_uses_template_health_path(self, harness, prober):
        instance_id = await harness.add_instance(healthy=False)
        await harness.checker.probe_once(harness.registry.get(instance_id))
        assert prober.calls == [(instance_id, "/healthz")]

    @pytest.mark.asyncio
    async def test_refusing_instance_leaves_routable_set_on_third_failure(self, harness, prober):
        ids = [await harness.add_instance() for _ in range(3)]
        bad = ids[1]
        prober.fail(bad)

        for attempt in range(1, 6):
            await harness.checker.probe_once(harness.registry.get(bad))
            if attempt < 3:
                assert bad in harness.routable_ids()
                assert harness.checker.verdict(bad) == HealthVerdict.HEALTHY
            else:
                assert bad not in harness.routable_ids()
                assert harness.checker.verdict(bad) == HealthVerdict.UNHEALTHY

        assert harness.routable_ids() == [ids[0], ids[2]]
        # the checker reports, it never removes
        assert harness.registry.get(bad).state == InstanceState.IN_SERVICE
        assert harness.checker.record(bad).consecutive_failures == 5

    @pytest.mark.asyncio
    async def test_recovery_after_n_successes(self, harness, prober):
        instance_id = await harness.add_instance()
        await harness.make_unhealthy(instance_id)
        assert instance_id not in harness.routable_ids()

        prober.recover(instance_id)
        await harness.checker.probe_once(harness.registry.get(instance_id))
        assert instance_id not in harness.routable_ids()
        await harness.checker.probe_once(harness.registry.get(instance_id))
        assert instance_id in harness.routable_ids()

    @pytest.mark.asyncio
    async def test_health_events_published_on_change_only(self, harness):
        events = []
        harness.core.bus.subscribe(
            lambda e: events.append(e) if isinstance(e, HealthEvent) else None
        )
        instance_id = await harness.add_instance()
        await harness.checker.probe_once(harness.registry.get(instance_id))

        assert events == [HealthEvent(instance_id, HealthVerdict.UNKNOWN, HealthVerdict.HEALTHY)]

    @pytest.mark.asyncio
    async def test_slow_probe_counts_as_timeout(self, make_harness):
        harness = make_harness(probe_timeout_s=0.05, unhealthy_threshold=1)

        class SlowProber:
            async def probe(self, instance, path):
                await asyncio.sleep(1.0)

        harness.checker.prober = SlowProber()
        instance_id = await harness.add_instance(healthy=False)
        verdict = await harness.checker.probe_once(harness.registry.get(instance_id))

        assert verdict == HealthVerdict.UNHEALTHY
        assert "ProbeTimeout" in harness.checker.record(instance_id).last_error

    @pytest.mark.asyncio
    async def test_unexpected_prober_error_is_a_failure(self, make_harness):
        harness = make_harness(unhealthy_threshold=1)

        class BrokenProber:
            async def probe(self, instance, path):
                raise RuntimeError("bug")

        harness.checker.prober = BrokenProber()
        instance_id = await harness.add_instance(healthy=False)
        assert await harness.checker.probe_once(harness.registry.get(instance_id)) == HealthVerdict.UNHEALTHY

    @pytest.mark.asyncio
    async def test_report_failure_counts_like_a_probe(self, harness):
        instance_id = await harness.add_instance()
        for _ in range(3):
            harness.checker.report_failure(instance_id, ConnectionRefusedError("proxy down"))
        assert harness.checker.verdict(instance_id) == HealthVerdict.UNHEALTHY
        assert instance_id not in harness.routable_ids()

    @pytest.mark.asyncio
    async def test_record_lifecycle_follows_registry(self, harness):
        instance_id = await harness.add_instance(healthy=False)
        assert harness.checker.record(instance_id) is not None

        await harness.registry.deregister(instance_id)
        assert harness.checker.record(instance_id) is None
        assert harness.checker.verdict(instance_id) == HealthVerdict.UNKNOWN

    @pytest.mark.asyncio
    async def test_probe_tasks_start_and_stop(self, make_harness):
        harness = make_harness(probe_interval_s=0.01)
        instance_id = await harness.add_instance(healthy=False)

        harness.checker.start()
        for _ in range(100):
            if harness.checker.verdict(instance_id) == HealthVerdict.HEALTHY:
                break
            await asyncio.sleep(0.01)
        await harness.checker.stop()

        assert harness.checker.verdict(instance_id) == HealthVerdict.HEALTHY
        assert harness.registry.get(instance_id).state == InstanceState.IN_SERVICE
