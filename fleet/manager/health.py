"""Health checker.

Each registered instance gets its own probe task, so probes for one instance
never overlap while different instances are probed concurrently. Verdicts are
debounced by ``HealthRecord.observe``. The checker promotes ``pending``
instances once they turn healthy but never removes anything from the
registry; that belongs to the scaling controller.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

import httpx

from fleet.common.config import FleetSettings
from fleet.common.errors import (
    InstanceNotFound,
    InvalidTransition,
    ProbeError,
    ProbeFailed,
    ProbeRefused,
    ProbeTimeout,
    TemplateNotFound,
)
from fleet.common.events import EventBus, FleetEvent, HealthEvent, RegistryEvent
from fleet.common.models import HealthRecord, HealthVerdict, Instance, InstanceState
from fleet.common.utils import jittered_offset
from fleet.manager.registry import InstanceRegistry
from fleet.manager.templates import TemplateCatalog

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_PATH = "/health"


class HttpProber:
    """GET the liveness endpoint through the instance's router-facing port"""

    def __init__(self, timeout: float, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout = timeout
        self._transport = transport

    async def probe(self, instance: Instance, path: str) -> None:
        url = f"{instance.endpoint.url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url)
        except httpx.TimeoutException as exc:
            raise ProbeTimeout(instance.instance_id, str(exc) or "timed out") from exc
        except httpx.ConnectError as exc:
            raise ProbeRefused(instance.instance_id, str(exc) or "connection refused") from exc
        except httpx.HTTPError as exc:
            raise ProbeFailed(instance.instance_id, f"{type(exc).__name__}: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise ProbeFailed(instance.instance_id, f"status {resp.status_code}")


class HealthChecker:
    def __init__(
        self,
        registry: InstanceRegistry,
        bus: EventBus,
        prober,
        settings: FleetSettings,
        catalog: Optional[TemplateCatalog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self.prober = prober
        self.catalog = catalog
        self.clock = clock
        self.interval = settings.probe_interval_s
        self.timeout = settings.probe_timeout_s
        self.healthy_threshold = settings.healthy_threshold
        self.unhealthy_threshold = settings.unhealthy_threshold
        self._records: Dict[str, HealthRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        bus.subscribe(self._on_event)
        for instance in registry.snapshot():
            self._records.setdefault(instance.instance_id, HealthRecord(instance.instance_id))

    def start(self) -> None:
        self._running = True
        for instance in self.registry.snapshot():
            if instance.state != InstanceState.TERMINATED:
                self._start_probing(instance.instance_id)

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def verdict(self, instance_id: str) -> HealthVerdict:
        record = self._records.get(instance_id)
        return record.verdict if record else HealthVerdict.UNKNOWN

    def record(self, instance_id: str) -> Optional[HealthRecord]:
        return self._records.get(instance_id)

    def records(self) -> List[HealthRecord]:
        return list(self._records.values())

    def _on_event(self, event: FleetEvent) -> None:
        if not isinstance(event, RegistryEvent):
            return
        instance_id = event.instance.instance_id
        if event.kind == RegistryEvent.REGISTERED:
            self._records[instance_id] = HealthRecord(instance_id)
            if self._running:
                self._start_probing(instance_id)
        elif event.kind == RegistryEvent.STATE_CHANGED:
            if event.instance.state == InstanceState.TERMINATED:
                self._stop_probing(instance_id)
        elif event.kind == RegistryEvent.DEREGISTERED:
            self._stop_probing(instance_id)
            self._records.pop(instance_id, None)

    def _start_probing(self, instance_id: str) -> None:
        task = self._tasks.get(instance_id)
        if task is None or task.done():
            self._tasks[instance_id] = asyncio.create_task(self._probe_loop(instance_id))

    def _stop_probing(self, instance_id: str) -> None:
        task = self._tasks.pop(instance_id, None)
        if task is not None:
            task.cancel()

    async def _probe_loop(self, instance_id: str) -> None:
        # random first offset so probes against the fleet are not in lockstep
        await asyncio.sleep(jittered_offset(self.interval))
        while True:
            instance = self.registry.get(instance_id)
            if instance is None or instance.state == InstanceState.TERMINATED:
                return
            try:
                await self.probe_once(instance)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Health probe loop error for %s: %s", instance_id, exc)
            await asyncio.sleep(self.interval)

    def _health_path(self, instance: Instance) -> str:
        if self.catalog is None:
            return DEFAULT_HEALTH_PATH
        try:
            return self.catalog.get(instance.template_version).health_path
        except TemplateNotFound:
            return DEFAULT_HEALTH_PATH

    async def probe_once(self, instance: Instance) -> HealthVerdict:
        """Run one bounded probe and fold the result into the state machine"""
        error: Optional[str] = None
        try:
            await asyncio.wait_for(
                self.prober.probe(instance, self._health_path(instance)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            error = str(ProbeTimeout(instance.instance_id, f"no answer within {self.timeout}s"))
        except ProbeError as exc:
            error = str(exc)
        except Exception as exc:
            error = str(ProbeFailed(instance.instance_id, f"{type(exc).__name__}: {exc}"))

        changed = self._observe(instance.instance_id, error is None, error)
        if changed == HealthVerdict.HEALTHY:
            await self._promote(instance.instance_id)
        return self.verdict(instance.instance_id)

    def report_failure(self, instance_id: str, error: Exception) -> None:
        """Probe-equivalent failure seen on the traffic path (proxy unreachable)"""
        self._observe(instance_id, False, f"traffic path: {error}")

    def _observe(self, instance_id: str, success: bool, error: Optional[str]) -> Optional[HealthVerdict]:
        record = self._records.get(instance_id)
        if record is None:
            return None
        if error:
            logger.debug("Probe failed for %s: %s", instance_id, error)
        previous = record.observe(
            success,
            self.clock(),
            self.healthy_threshold,
            self.unhealthy_threshold,
            error=error,
        )
        if previous is None:
            return None
        log = logger.info if record.verdict == HealthVerdict.HEALTHY else logger.warning
        log(
            "Instance %s health %s -> %s%s",
            instance_id,
            previous.value,
            record.verdict.value,
            f" ({error})" if error else "",
        )
        self.bus.publish(HealthEvent(instance_id, previous, record.verdict))
        return record.verdict

    async def _promote(self, instance_id: str) -> None:
        instance = self.registry.get(instance_id)
        if instance is None or instance.state != InstanceState.PENDING:
            return
        try:
            await self.registry.set_state(instance_id, InstanceState.IN_SERVICE)
        except (InstanceNotFound, InvalidTransition) as exc:
            logger.info("Promotion of %s skipped: %s", instance_id, exc)
