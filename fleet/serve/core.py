"""Control plane wiring.

Builds the registry, health checker, traffic router, metrics pipeline and
scaling controller around one event bus and exposes the operations the HTTP
ingress needs as plain dict-returning methods.
"""
from __future__ import annotations

import logging
import shlex
import time
from typing import Callable, Dict, Mapping, Optional, Tuple

import httpx

from fleet.common.config import FleetSettings
from fleet.common.errors import TemplateNotFound, TemplateValidationError
from fleet.common.events import EventBus, FleetEvent, RegistryEvent
from fleet.common.models import Instance
from fleet.manager.health import HealthChecker, HttpProber
from fleet.manager.metrics import MetricsAggregator, MetricsCollector
from fleet.manager.provisioner import AgentProvisioner, Provisioner
from fleet.manager.registry import InstanceRegistry
from fleet.manager.templates import TemplateCatalog
from fleet.router.service import TrafficRouter
from fleet.serve.autoscaler import ScalingController

logger = logging.getLogger(__name__)


class FleetControlCore:
    """Owns every control plane component and their periodic tasks."""

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        provisioner: Optional[Provisioner] = None,
        prober=None,
        initial_template: Optional[Dict] = None,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or FleetSettings()
        self.settings.validate()
        self.clock = clock
        self.bus = EventBus()
        self.catalog = TemplateCatalog()
        self.registry = InstanceRegistry(self.bus, self.settings.max_size, clock=clock)
        self.checker = HealthChecker(
            self.registry,
            self.bus,
            prober or HttpProber(self.settings.probe_timeout_s, transport=transport),
            self.settings,
            catalog=self.catalog,
            clock=clock,
        )
        self.router = TrafficRouter(
            self.registry,
            self.checker,
            self.bus,
            self.settings,
            transport=transport,
        )
        self.aggregator = MetricsAggregator(self.settings.metric_window_s, clock=clock)
        self.collector = MetricsCollector(
            self.registry,
            self.aggregator,
            self.settings,
            request_counts=self.router.take_request_counts,
            transport=transport,
            clock=clock,
        )
        self.provisioner = provisioner or AgentProvisioner(
            self.settings.agent_urls,
            timeout=self.settings.provision_timeout_s,
            transport=transport,
        )
        self.controller = ScalingController(
            self.registry,
            self.checker,
            self.router,
            self.aggregator,
            self.provisioner,
            self.catalog,
            self.settings,
            clock=clock,
        )
        self.bus.subscribe(self._on_event)
        self._started = False

        if initial_template:
            self.publish_template(initial_template)

    def _on_event(self, event: FleetEvent) -> None:
        if isinstance(event, RegistryEvent) and event.kind == RegistryEvent.DEREGISTERED:
            self.aggregator.forget(event.instance.instance_id)

    def start(self) -> None:
        if self._started:
            return
        self.checker.start()
        self.collector.start()
        self.controller.start()
        self._started = True
        logger.info(
            "Fleet control plane started: size [%s, %s], %s agent(s)",
            self.settings.min_size,
            self.settings.max_size,
            len(self.settings.agent_urls),
        )

    async def stop(self) -> None:
        await self.controller.stop()
        await self.collector.stop()
        await self.checker.stop()
        self._started = False
        logger.info("Fleet control plane stopped")

    def _instance_view(self, instance: Instance) -> Dict:
        data = instance.to_dict()
        data["health"] = self.checker.verdict(instance.instance_id).value
        data["in_flight"] = self.router.in_flight(instance.instance_id)
        return data

    async def health(self) -> Dict:
        instances = self.registry.snapshot()
        return {
            "status": "ok",
            "service": "fleet",
            "instances": len(instances),
            "routable": len(self.router.routable()),
            "desired": self.controller.desired,
        }

    async def list_instances(self) -> Dict:
        return {"instances": [self._instance_view(i) for i in self.registry.snapshot()]}

    async def list_routable(self) -> Dict:
        return {"routable": [self._instance_view(i) for i in self.router.routable()]}

    async def health_records(self) -> Dict:
        return {"records": [r.to_dict() for r in self.checker.records()]}

    async def list_decisions(self, limit: Optional[int] = None) -> Dict:
        decisions = self.controller.decisions
        if limit:
            decisions = decisions[-limit:]
        return {
            "controller": self.controller.status(),
            "decisions": [d.to_dict() for d in decisions],
        }

    def publish_template(self, body: Mapping) -> Dict:
        try:
            template = self.catalog.publish(
                name=body.get("name"),
                command=body.get("command") or [],
                app_port=body.get("app_port"),
                listen_port=body.get("listen_port"),
                health_path=body.get("health_path") or "/health",
                env=body.get("env"),
                make_default=body.get("make_default", True),
            )
        except TemplateValidationError as exc:
            logger.warning("Rejected launch template: %s", exc)
            return {"status": "error", "message": str(exc)}
        return {"status": "success", "template": template.to_dict()}

    async def set_default_template(self, version: int) -> Dict:
        try:
            template = self.catalog.set_default(version)
        except TemplateNotFound as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "success", "template": template.to_dict()}

    async def list_templates(self) -> Dict:
        current = self.catalog.current()
        return {
            "default_version": current.version if current else None,
            "templates": [t.to_dict() for t in self.catalog.list()],
        }

    async def set_capacity(
        self,
        desired: Optional[int] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> Dict:
        if min_size is not None or max_size is not None:
            try:
                self.controller.set_bounds(min_size=min_size, max_size=max_size)
            except ValueError as exc:
                return {"status": "error", "message": str(exc)}
        result = {"status": "success"}
        if desired is not None:
            decision = await self.controller.set_desired(desired)
            result["decision"] = decision.to_dict()
        result["controller"] = self.controller.status()
        return result

    async def start_refresh(self) -> Dict:
        return await self.controller.start_refresh()

    async def forward(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Tuple[Instance, httpx.Response]:
        return await self.router.forward(method, path, headers=headers, content=content, params=params)


def template_from_env(env: Mapping[str, str]) -> Optional[Dict]:
    """Initial launch template from FLEET_TEMPLATE_* variables, if configured"""
    command = env.get("FLEET_TEMPLATE_COMMAND")
    if not command:
        return None
    return {
        "name": env.get("FLEET_TEMPLATE_NAME", "app"),
        "command": shlex.split(command),
        "app_port": int(env.get("FLEET_TEMPLATE_APP_PORT", "8080")),
        "listen_port": int(env.get("FLEET_TEMPLATE_LISTEN_PORT", "80")),
        "health_path": env.get("FLEET_TEMPLATE_HEALTH_PATH", "/health"),
    }
