"""Shared fixtures: a manual clock, scripted prober/provisioner and a harness
that wires a full control plane without starting any background task."""
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from fleet.common.config import FleetSettings
from fleet.common.errors import ProbeRefused, ProvisioningFailure
from fleet.common.models import Endpoint, InstanceState, LaunchedInstance, MetricSample
from fleet.manager.provisioner import Provisioner
from fleet.serve.core import FleetControlCore

TEMPLATE = {
    "name": "web",
    "command": ["python", "-m", "http.server", "{port}"],
    "app_port": 8080,
    "listen_port": 80,
    "health_path": "/healthz",
}

_seed_ids = itertools.count(1)


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProber:
    """Healthy by default; ``fail(id)`` makes an instance refuse connections"""

    def __init__(self) -> None:
        self.failing: Dict[str, type] = {}
        self.calls: List[tuple] = []

    def fail(self, instance_id: str, error: type = ProbeRefused) -> None:
        self.failing[instance_id] = error

    def recover(self, instance_id: str) -> None:
        self.failing.pop(instance_id, None)

    async def probe(self, instance, path: str) -> None:
        self.calls.append((instance.instance_id, path))
        error = self.failing.get(instance.instance_id)
        if error is not None:
            raise error(instance.instance_id, "scripted failure")


class FakeProvisioner(Provisioner):
    def __init__(self) -> None:
        self.fail_launches = 0
        self.fail_terminates = 0
        self.launch_attempts = 0
        self.launched: List[LaunchedInstance] = []
        self.launched_versions: List[int] = []
        self.terminated: List[str] = []
        self._ids = itertools.count(1)

    async def launch(self, template):
        self.launch_attempts += 1
        if self.fail_launches:
            self.fail_launches -= 1
            raise ProvisioningFailure("launch", "quota exceeded")
        n = next(self._ids)
        launched = LaunchedInstance(
            provider_id=f"p-{n}",
            endpoint=Endpoint("10.0.1.1", 20000 + n, template.app_port),
            control_url="http://agent-a:7000",
        )
        self.launched.append(launched)
        self.launched_versions.append(template.version)
        return launched

    async def terminate(self, provider_id, control_url=None):
        if self.fail_terminates:
            self.fail_terminates -= 1
            raise ProvisioningFailure("terminate", "agent unreachable", provider_id)
        self.terminated.append(provider_id)


class FleetHarness:
    def __init__(self, settings, clock, prober, provisioner, transport=None, template=True) -> None:
        self.settings = settings
        self.clock = clock
        self.prober = prober
        self.provisioner = provisioner
        self.core = FleetControlCore(
            settings=settings,
            provisioner=provisioner,
            prober=prober,
            initial_template=dict(TEMPLATE) if template else None,
            clock=clock,
            transport=transport,
        )
        self.registry = self.core.registry
        self.checker = self.core.checker
        self.router = self.core.router
        self.aggregator = self.core.aggregator
        self.controller = self.core.controller
        self.catalog = self.core.catalog

    async def add_instance(self, healthy: bool = True, template_version: Optional[int] = None) -> str:
        n = next(_seed_ids)
        if template_version is None:
            current = self.catalog.current()
            template_version = current.version if current else 1
        instance_id = await self.registry.register(
            Endpoint("10.0.0.2", 30000 + n, 8080),
            template_version,
            provider_id=f"seed-{n}",
            control_url="http://agent-a:7000",
        )
        if healthy:
            await self.make_healthy(instance_id)
        return instance_id

    async def make_healthy(self, instance_id: str) -> None:
        self.prober.recover(instance_id)
        for _ in range(self.settings.healthy_threshold):
            await self.checker.probe_once(self.registry.get(instance_id))

    async def make_unhealthy(self, instance_id: str) -> None:
        self.prober.fail(instance_id)
        for _ in range(self.settings.unhealthy_threshold):
            await self.checker.probe_once(self.registry.get(instance_id))

    async def promote_pending(self) -> None:
        for instance in self.registry.snapshot():
            if instance.state == InstanceState.PENDING:
                await self.make_healthy(instance.instance_id)

    def record_load(self, cpu: float) -> None:
        for instance in self.registry.snapshot():
            if instance.state == InstanceState.IN_SERVICE:
                self.aggregator.record(
                    instance.instance_id,
                    MetricSample(instance.instance_id, self.clock(), cpu),
                )

    def active(self) -> List[str]:
        return [
            i.instance_id for i in self.registry.snapshot()
            if i.state in (InstanceState.PENDING, InstanceState.IN_SERVICE)
        ]

    def routable_ids(self) -> List[str]:
        return [i.instance_id for i in self.router.routable()]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def settings():
    return FleetSettings(
        min_size=2,
        max_size=10,
        max_step=2,
        scale_out_step=2,
        scale_in_step=1,
        scale_out_threshold=0.70,
        scale_in_threshold=0.30,
        cooldown_s=60.0,
        tick_interval_s=30.0,
        metric_window_s=120.0,
        drain_grace_s=30.0,
        pending_timeout_s=300.0,
        unhealthy_grace_s=60.0,
        launch_backoff_s=30.0,
        launch_backoff_max_s=300.0,
        healthy_threshold=2,
        unhealthy_threshold=3,
        probe_timeout_s=0.2,
        router_instance_capacity=32,
        router_queue_size=16,
        router_queue_timeout_s=0.2,
    )


@pytest.fixture
def make_harness(settings, clock, prober, provisioner):
    def factory(transport=None, template=True, **overrides):
        return FleetHarness(
            replace(settings, **overrides),
            clock,
            prober,
            provisioner,
            transport=transport,
            template=template,
        )
    return factory


@pytest.fixture
def harness(make_harness):
    return make_harness()
