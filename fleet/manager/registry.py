"""Instance registry.

Single writer: every mutation runs under one lock, commits a new immutable
snapshot and only then notifies subscribers. Readers use ``snapshot()`` and
never take the lock.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fleet.common.errors import CapacityExceeded, InstanceNotFound, InvalidTransition
from fleet.common.events import EventBus, RegistryEvent
from fleet.common.models import ALLOWED_TRANSITIONS, Endpoint, Instance, InstanceState
from fleet.common.utils import new_instance_id

logger = logging.getLogger(__name__)


class InstanceRegistry:
    def __init__(
        self,
        bus: EventBus,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bus = bus
        self.max_size = max_size
        self.clock = clock
        self._instances: Dict[str, Instance] = {}
        self._snapshot: Tuple[Instance, ...] = ()
        self._lock = asyncio.Lock()

    def snapshot(self) -> Tuple[Instance, ...]:
        return self._snapshot

    def list(self) -> Tuple[Instance, ...]:
        return self._snapshot

    def get(self, instance_id: str) -> Optional[Instance]:
        return self._instances.get(instance_id)

    def live_count(self) -> int:
        return sum(1 for i in self._snapshot if i.state != InstanceState.TERMINATED)

    def set_max_size(self, max_size: int) -> None:
        self.max_size = max_size

    async def register(
        self,
        endpoint: Endpoint,
        template_version: int,
        provider_id: Optional[str] = None,
        control_url: Optional[str] = None,
    ) -> str:
        async with self._lock:
            if self.live_count() >= self.max_size:
                raise CapacityExceeded(self.max_size)
            now = self.clock()
            instance = Instance(
                instance_id=new_instance_id(),
                endpoint=endpoint,
                template_version=template_version,
                state=InstanceState.PENDING,
                created_at=now,
                state_changed_at=now,
                provider_id=provider_id,
                control_url=control_url,
            )
            self._instances[instance.instance_id] = instance
            self._publish()
            logger.info(
                "Registered %s at %s (template v%s)",
                instance.instance_id,
                endpoint.url,
                template_version,
            )
            self.bus.publish(RegistryEvent(RegistryEvent.REGISTERED, instance))
            return instance.instance_id

    async def deregister(self, instance_id: str) -> bool:
        async with self._lock:
            instance = self._instances.pop(instance_id, None)
            if instance is None:
                logger.info("Deregister of %s ignored: not found", instance_id)
                return False
            self._publish()
            logger.info("Deregistered %s", instance_id)
            self.bus.publish(RegistryEvent(RegistryEvent.DEREGISTERED, instance))
            return True

    async def set_state(self, instance_id: str, state: InstanceState) -> Instance:
        async with self._lock:
            current = self._instances.get(instance_id)
            if current is None:
                raise InstanceNotFound(instance_id)
            if current.state == state:
                return current
            if state not in ALLOWED_TRANSITIONS[current.state]:
                raise InvalidTransition(instance_id, current.state.value, state.value)
            updated = current.with_state(state, self.clock())
            self._instances[instance_id] = updated
            self._publish()
            logger.info("Instance %s %s -> %s", instance_id, current.state.value, state.value)
            self.bus.publish(RegistryEvent(RegistryEvent.STATE_CHANGED, updated, previous=current))
            return updated

    def _publish(self) -> None:
        # dict order is registration order
        self._snapshot = tuple(self._instances.values())
