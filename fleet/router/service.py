"""Traffic router.

Keeps the routable set (instances that are ``in_service`` *and* healthy),
recomputed whenever the registry or the health checker publishes an event.
Request handling only reads the last published tuple, so it never waits on
the controller or the checker.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque, Dict, Mapping, Optional, Tuple

import httpx

from fleet.common.config import FleetSettings
from fleet.common.errors import RoutingUnavailable, UpstreamTimeout, UpstreamUnavailable
from fleet.common.events import EventBus, FleetEvent, RegistryEvent
from fleet.common.models import HealthVerdict, Instance, InstanceState

logger = logging.getLogger(__name__)


class TrafficRouter:
    def __init__(
        self,
        registry,
        health,
        bus: EventBus,
        settings: FleetSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.registry = registry
        self.health = health
        self.instance_capacity = settings.router_instance_capacity
        self.queue_size = settings.router_queue_size
        self.queue_timeout = settings.router_queue_timeout_s
        self.request_timeout = settings.request_timeout_s
        self._transport = transport
        self._routable: Tuple[Instance, ...] = ()
        self._in_flight: Dict[str, int] = {}
        self._last_selected: Dict[str, int] = {}
        self._request_counts: Dict[str, int] = {}
        self._seq = 0
        self._cursor = 0
        self._waiters: Deque[asyncio.Future] = deque()
        bus.subscribe(self._on_event)
        self.recompute()

    def routable(self) -> Tuple[Instance, ...]:
        return self._routable

    def in_flight(self, instance_id: str) -> int:
        return self._in_flight.get(instance_id, 0)

    def total_in_flight(self) -> int:
        return sum(self._in_flight.values())

    def take_request_counts(self) -> Dict[str, int]:
        counts, self._request_counts = self._request_counts, {}
        return counts

    def _on_event(self, event: FleetEvent) -> None:
        if isinstance(event, RegistryEvent) and event.kind == RegistryEvent.DEREGISTERED:
            self._last_selected.pop(event.instance.instance_id, None)
        self.recompute()

    def recompute(self) -> None:
        previous = {i.instance_id for i in self._routable}
        self._routable = tuple(
            instance
            for instance in self.registry.snapshot()
            if instance.state == InstanceState.IN_SERVICE
            and self.health.verdict(instance.instance_id) == HealthVerdict.HEALTHY
        )
        current = {i.instance_id for i in self._routable}
        if current != previous:
            logger.info(
                "Routable set: %d instance(s) (+%s -%s)",
                len(current),
                sorted(current - previous),
                sorted(previous - current),
            )
        self._wake_waiters()

    def _pick(self) -> Optional[Instance]:
        routable = self._routable
        if not routable:
            return None
        size = len(routable)
        candidates = [
            (index, instance)
            for index, instance in enumerate(routable)
            if self._in_flight.get(instance.instance_id, 0) < self.instance_capacity
        ]
        if not candidates:
            return None
        # least recently selected wins; never-selected instances first,
        # equal stamps resolved in rotation order from the cursor
        index, chosen = min(
            candidates,
            key=lambda c: (
                self._last_selected.get(c[1].instance_id, 0),
                (c[0] - self._cursor) % size,
            ),
        )
        self._seq += 1
        self._last_selected[chosen.instance_id] = self._seq
        self._cursor = (index + 1) % size
        return chosen

    async def _acquire(self) -> Instance:
        loop = asyncio.get_running_loop()
        deadline: Optional[float] = None
        while True:
            if not self._routable:
                raise RoutingUnavailable(RoutingUnavailable.EMPTY)
            instance = self._pick()
            if instance is not None:
                instance_id = instance.instance_id
                self._in_flight[instance_id] = self._in_flight.get(instance_id, 0) + 1
                self._request_counts[instance_id] = self._request_counts.get(instance_id, 0) + 1
                return instance

            # every routable instance is at capacity: wait in the bounded buffer
            if len(self._waiters) >= self.queue_size:
                raise RoutingUnavailable(RoutingUnavailable.BACKPRESSURE)
            if deadline is None:
                deadline = loop.time() + self.queue_timeout
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RoutingUnavailable(RoutingUnavailable.BACKPRESSURE)
            waiter = loop.create_future()
            self._waiters.append(waiter)
            try:
                await asyncio.wait_for(waiter, remaining)
            except asyncio.TimeoutError:
                raise RoutingUnavailable(RoutingUnavailable.BACKPRESSURE) from None
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

    def _release(self, instance_id: str) -> None:
        count = self._in_flight.get(instance_id, 0) - 1
        if count > 0:
            self._in_flight[instance_id] = count
        else:
            self._in_flight.pop(instance_id, None)
        self._wake_waiters()

    def _wake_waiters(self) -> None:
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[Instance]:
        """Hold one in-flight slot on the selected instance.

        The slot survives the instance leaving the routable set, so requests
        already running drain instead of being cut off.
        """
        instance = await self._acquire()
        try:
            yield instance
        finally:
            self._release(instance.instance_id)

    async def forward(
        self,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> Tuple[Instance, httpx.Response]:
        async with self.lease() as instance:
            url = f"{instance.endpoint.url}{path}"
            try:
                async with httpx.AsyncClient(timeout=self.request_timeout, transport=self._transport) as client:
                    response = await client.request(
                        method,
                        url,
                        headers=headers,
                        content=content,
                        params=params,
                    )
                    return instance, response
            except httpx.TimeoutException:
                raise UpstreamTimeout(instance.instance_id) from None
            except httpx.ConnectError as exc:
                # the proxy port is not answering; treat like a failed probe
                self.health.report_failure(instance.instance_id, exc)
                raise UpstreamUnavailable(instance.instance_id, str(exc)) from exc
            except httpx.HTTPError as exc:
                raise UpstreamUnavailable(instance.instance_id, f"{type(exc).__name__}: {exc}") from exc
