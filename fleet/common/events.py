"""Synchronous in-process event bus.

Events are delivered right after the publishing component committed its
change, in commit order. Subscribers must not block; anything that needs to
await schedules its own task.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from fleet.common.models import HealthVerdict, Instance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEvent:
    REGISTERED = "registered"
    STATE_CHANGED = "state_changed"
    DEREGISTERED = "deregistered"

    kind: str
    instance: Instance
    previous: Optional[Instance] = None


@dataclass(frozen=True)
class HealthEvent:
    instance_id: str
    previous: HealthVerdict
    verdict: HealthVerdict


FleetEvent = Union[RegistryEvent, HealthEvent]
Subscriber = Callable[[FleetEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: FleetEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logger.error("Event subscriber %r failed on %r: %s", callback, event, exc)
