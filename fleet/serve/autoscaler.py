"""Threshold-based scaling controller for the instance fleet."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from fleet.common.config import FleetSettings
from fleet.common.errors import (
    CapacityExceeded,
    InstanceNotFound,
    InvalidTransition,
    ProvisioningFailure,
    StaleMetric,
)
from fleet.common.models import (
    HealthVerdict,
    Instance,
    InstanceState,
    LaunchTemplate,
    ReasonCode,
    ScalingDecision,
)
from fleet.manager.health import HealthChecker
from fleet.manager.metrics import MetricsAggregator
from fleet.manager.provisioner import Provisioner
from fleet.manager.registry import InstanceRegistry
from fleet.manager.templates import TemplateCatalog

logger = logging.getLogger(__name__)

_ACTIVE_STATES = (InstanceState.PENDING, InstanceState.IN_SERVICE)


class ScalingController:
    """Periodic control loop sizing the fleet to load.

    Every tick first does housekeeping (drains, stuck launches, unhealthy
    replacement), then produces exactly one ScalingDecision, then reconciles
    the fleet towards the desired capacity. Only scale_out, scale_in and
    manual decisions move the desired capacity and start the cooldown.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        health: HealthChecker,
        router,
        aggregator: MetricsAggregator,
        provisioner: Provisioner,
        catalog: TemplateCatalog,
        settings: FleetSettings,
        clock: Callable[[], float] = time.monotonic,
        history: int = 100,
    ) -> None:
        self.registry = registry
        self.health = health
        self.router = router
        self.aggregator = aggregator
        self.provisioner = provisioner
        self.catalog = catalog
        self.settings = settings
        self.clock = clock
        self.min_size = settings.min_size
        self.max_size = settings.max_size
        self._desired = settings.min_size
        self._tick = 0
        self._last_action_at: Optional[float] = None
        self._decisions: Deque[ScalingDecision] = deque(maxlen=history)
        self._launch_failures = 0
        self._next_launch_at = 0.0
        self._refresh_version: Optional[int] = None
        self._tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def desired(self) -> int:
        return self._desired

    @property
    def decisions(self) -> List[ScalingDecision]:
        return list(self._decisions)

    @property
    def refresh_version(self) -> Optional[int]:
        return self._refresh_version

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.tick_interval_s)
            try:
                await self.tick()
            except Exception as exc:
                logger.warning("Scaling controller loop error: %s", exc)

    # ------------------------------------------------------------------ tick

    async def tick(self) -> ScalingDecision:
        async with self._tick_lock:
            self._tick += 1
            now = self.clock()
            await self._housekeeping(now)
            decision = self._decide(now)
            self._record(decision, now)
            await self._reconcile(now)
            return decision

    def _active(self) -> List[Instance]:
        return [i for i in self.registry.snapshot() if i.state in _ACTIVE_STATES]

    def _decide(self, now: float) -> ScalingDecision:
        instances = self.registry.snapshot()
        in_service = [i for i in instances if i.state == InstanceState.IN_SERVICE]
        pending = [i for i in instances if i.state == InstanceState.PENDING]
        current = len(in_service) + len(pending)

        def decision(target: int, reason: ReasonCode, metric: Optional[float] = None) -> ScalingDecision:
            return ScalingDecision(
                tick=self._tick,
                timestamp=now,
                current=current,
                target=target,
                reason=reason,
                metric=metric,
            )

        # inclusive: a tick landing exactly on the boundary is still cooling down
        if self._last_action_at is not None and now - self._last_action_at <= self.settings.cooldown_s:
            return decision(self._desired, ReasonCode.COOLDOWN)

        if not in_service:
            return decision(self._desired, ReasonCode.NO_DATA)
        try:
            metric = self.aggregator.mean_or_raise(
                self.settings.metric_name,
                instance_ids=[i.instance_id for i in in_service],
            )
        except StaleMetric as exc:
            logger.debug("No scaling metric: %s", exc)
            return decision(self._desired, ReasonCode.NO_DATA)

        if metric > self.settings.scale_out_threshold:
            if pending:
                return decision(self._desired, ReasonCode.WAITING_PENDING, metric)
            if self._desired >= self.max_size:
                return decision(self._desired, ReasonCode.AT_MAX, metric)
            step = min(self.settings.scale_out_step, self.settings.max_step)
            return decision(min(self.max_size, self._desired + step), ReasonCode.SCALE_OUT, metric)

        if metric < self.settings.scale_in_threshold:
            if self._desired <= self.min_size:
                return decision(self._desired, ReasonCode.AT_MIN, metric)
            step = min(self.settings.scale_in_step, self.settings.max_step)
            return decision(max(self.min_size, self._desired - step), ReasonCode.SCALE_IN, metric)

        return decision(self._desired, ReasonCode.WITHIN_BAND, metric)

    def _record(self, decision: ScalingDecision, now: float) -> None:
        self._decisions.append(decision)
        metric = "unknown" if decision.metric is None else f"{decision.metric:.2f}"
        if decision.is_noop:
            logger.debug(
                "tick=%s current=%s desired=%s %s=%s -> %s",
                decision.tick,
                decision.current,
                self._desired,
                self.settings.metric_name,
                metric,
                decision.reason.value,
            )
            return
        self._desired = decision.target
        self._last_action_at = now
        logger.info(
            "tick=%s current=%s %s=%s -> %s, desired %s",
            decision.tick,
            decision.current,
            self.settings.metric_name,
            metric,
            decision.reason.value,
            decision.target,
        )

    # ---------------------------------------------------------- housekeeping

    async def _housekeeping(self, now: float) -> None:
        for instance in self.registry.snapshot():
            if (
                instance.state == InstanceState.PENDING
                and now - instance.created_at >= self.settings.pending_timeout_s
            ):
                logger.warning(
                    "Instance %s still pending after %.0fs, replacing",
                    instance.instance_id,
                    now - instance.created_at,
                )
                await self._drain(instance)
            elif instance.state == InstanceState.IN_SERVICE and self._unhealthy_for(instance, now):
                logger.warning(
                    "Instance %s unhealthy for over %.0fs, replacing",
                    instance.instance_id,
                    self.settings.unhealthy_grace_s,
                )
                await self._drain(instance)

        for instance in self.registry.snapshot():
            if instance.state != InstanceState.DRAINING:
                continue
            in_flight = self.router.in_flight(instance.instance_id)
            elapsed = now - instance.state_changed_at
            if in_flight == 0:
                await self._terminate(instance)
            elif elapsed >= self.settings.drain_grace_s:
                logger.warning(
                    "Drain of %s timed out with %s request(s) in flight, forcing teardown",
                    instance.instance_id,
                    in_flight,
                )
                await self._terminate(instance)

    def _unhealthy_for(self, instance: Instance, now: float) -> bool:
        record = self.health.record(instance.instance_id)
        if record is None or record.verdict != HealthVerdict.UNHEALTHY:
            return False
        changed_at = record.verdict_changed_at
        return changed_at is not None and now - changed_at >= self.settings.unhealthy_grace_s

    async def _drain(self, instance: Instance) -> bool:
        try:
            await self.registry.set_state(instance.instance_id, InstanceState.DRAINING)
        except (InstanceNotFound, InvalidTransition) as exc:
            logger.info("Drain of %s skipped: %s", instance.instance_id, exc)
            return False
        return True

    async def _terminate(self, instance: Instance) -> bool:
        if instance.provider_id:
            try:
                await self.provisioner.terminate(instance.provider_id, instance.control_url)
            except ProvisioningFailure as exc:
                # stays draining, retried next tick
                logger.warning("Terminate of %s failed: %s", instance.instance_id, exc)
                return False
        try:
            await self.registry.set_state(instance.instance_id, InstanceState.TERMINATED)
        except (InstanceNotFound, InvalidTransition) as exc:
            logger.info("Terminate of %s: %s", instance.instance_id, exc)
        await self.registry.deregister(instance.instance_id)
        return True

    # ------------------------------------------------------------- reconcile

    async def _reconcile(self, now: float) -> None:
        if self._refresh_version is not None:
            await self._reconcile_refresh(now)
            return

        active = self._active()
        if len(active) < self._desired:
            await self._launch(min(self._desired - len(active), self.settings.max_step), now)
        elif len(active) > self._desired:
            count = min(
                len(active) - self._desired,
                len(active) - self.min_size,
                self.settings.max_step,
            )
            for instance in self._scale_in_candidates(active)[:max(0, count)]:
                logger.info("Scale in: draining %s (%s)", instance.instance_id, instance.state.value)
                await self._drain(instance)

    def _scale_in_candidates(self, active: List[Instance]) -> List[Instance]:
        """Unhealthy first, then the oldest in_service, then pending"""
        unhealthy = [
            i for i in active if self.health.verdict(i.instance_id) == HealthVerdict.UNHEALTHY
        ]
        taken = {i.instance_id for i in unhealthy}
        in_service = sorted(
            (i for i in active if i.state == InstanceState.IN_SERVICE and i.instance_id not in taken),
            key=lambda i: i.created_at,
        )
        pending = sorted(
            (i for i in active if i.state == InstanceState.PENDING and i.instance_id not in taken),
            key=lambda i: i.created_at,
            reverse=True,
        )
        return unhealthy + in_service + pending

    async def _launch(self, count: int, now: float) -> int:
        if count <= 0:
            return 0
        if now < self._next_launch_at:
            logger.info(
                "Launch of %s instance(s) deferred, backing off for %.0fs",
                count,
                self._next_launch_at - now,
            )
            return 0
        template = self._launch_template()
        if template is None:
            logger.warning("No launch template published, cannot launch %s instance(s)", count)
            return 0
        room = self.registry.max_size - self.registry.live_count()
        if room < count:
            logger.info("Registry has room for %s of %s instance(s)", max(0, room), count)
            count = room

        launched = 0
        for _ in range(max(0, count)):
            try:
                await self._launch_one(template)
            except (ProvisioningFailure, CapacityExceeded) as exc:
                self._launch_failures += 1
                backoff = min(
                    self.settings.launch_backoff_max_s,
                    self.settings.launch_backoff_s * (2 ** (self._launch_failures - 1)),
                )
                self._next_launch_at = now + backoff
                logger.warning(
                    "Launch failed (%s in a row), retrying in %.0fs: %s",
                    self._launch_failures,
                    backoff,
                    exc,
                )
                break
            launched += 1
            self._launch_failures = 0
            self._next_launch_at = 0.0
        return launched

    def _launch_template(self) -> Optional[LaunchTemplate]:
        if self._refresh_version is not None:
            return self.catalog.get(self._refresh_version)
        return self.catalog.current()

    async def _launch_one(self, template: LaunchTemplate) -> str:
        launched = await self.provisioner.launch(template)
        try:
            instance_id = await self.registry.register(
                launched.endpoint,
                template.version,
                provider_id=launched.provider_id,
                control_url=launched.control_url,
            )
        except CapacityExceeded:
            try:
                await self.provisioner.terminate(launched.provider_id, launched.control_url)
            except ProvisioningFailure as exc:
                logger.error("Could not release unregistered %s: %s", launched.provider_id, exc)
            raise
        logger.info(
            "Launched %s from template v%s at %s",
            instance_id,
            template.version,
            launched.endpoint.url,
        )
        return instance_id

    # --------------------------------------------------------------- refresh

    async def start_refresh(self) -> Dict:
        """Replace in_service instances running an older template version"""
        template = self.catalog.current()
        if template is None:
            return {"status": "error", "message": "no launch template published"}
        async with self._tick_lock:
            outdated = self._outdated(template.version)
            if not outdated:
                return {"status": "success", "message": "fleet already on the current template", "outdated": 0}
            self._refresh_version = template.version
            logger.info(
                "Instance refresh to template v%s started: %s outdated instance(s)",
                template.version,
                len(outdated),
            )
            return {
                "status": "success",
                "message": f"refreshing to template v{template.version}",
                "outdated": len(outdated),
            }

    def _outdated(self, version: int) -> List[Instance]:
        return [i for i in self._active() if i.template_version < version]

    async def _reconcile_refresh(self, now: float) -> None:
        version = self._refresh_version
        outdated = self._outdated(version)
        if not outdated:
            logger.info("Instance refresh to template v%s complete", version)
            self._refresh_version = None
            await self._reconcile(now)
            return

        # launch replacements first, above desired but within max_size
        surge = min(self.settings.max_step, len(outdated), self.max_size - self._desired)
        active = self._active()
        missing = self._desired + surge - len(active)
        if missing > 0:
            await self._launch(min(missing, self.settings.max_step), now)

        ready = [
            i for i in self.registry.snapshot()
            if i.state == InstanceState.IN_SERVICE
            and i.template_version >= version
            and self.health.verdict(i.instance_id) == HealthVerdict.HEALTHY
        ]
        # outdated instances still needed to hold desired capacity
        keep = max(0, self._desired - len(ready) - (1 if surge == 0 else 0))
        drain = min(self.settings.max_step, len(outdated) - keep)
        candidates = self._scale_in_candidates(outdated)
        for instance in candidates[:max(0, drain)]:
            logger.info("Refresh: draining %s (template v%s)", instance.instance_id, instance.template_version)
            await self._drain(instance)

    # ---------------------------------------------------------------- manual

    async def set_desired(self, desired: int) -> ScalingDecision:
        async with self._tick_lock:
            now = self.clock()
            target = max(self.min_size, min(self.max_size, desired))
            decision = ScalingDecision(
                tick=self._tick,
                timestamp=now,
                current=len(self._active()),
                target=target,
                reason=ReasonCode.MANUAL,
            )
            self._record(decision, now)
            return decision

    def set_bounds(self, min_size: Optional[int] = None, max_size: Optional[int] = None) -> None:
        min_size = self.min_size if min_size is None else min_size
        max_size = self.max_size if max_size is None else max_size
        if min_size < 0 or max_size < max(1, min_size):
            raise ValueError(f"invalid bounds: min_size={min_size} max_size={max_size}")
        self.min_size = min_size
        self.max_size = max_size
        self.registry.set_max_size(max_size)
        self._desired = max(min_size, min(max_size, self._desired))
        logger.info("Fleet bounds set to [%s, %s], desired %s", min_size, max_size, self._desired)

    def status(self) -> Dict:
        instances = self.registry.snapshot()
        by_state: Dict[str, int] = {}
        for instance in instances:
            by_state[instance.state.value] = by_state.get(instance.state.value, 0) + 1
        return {
            "desired": self._desired,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "tick": self._tick,
            "instances": by_state,
            "refresh_version": self._refresh_version,
            "launch_failures": self._launch_failures,
        }
