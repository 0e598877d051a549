"""Windowed load metrics"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, Optional

import httpx

from fleet.common.config import FleetSettings
from fleet.common.errors import StaleMetric
from fleet.common.models import Instance, InstanceState, MetricSample

logger = logging.getLogger(__name__)

METRICS = ("cpu", "requests")


class MetricsAggregator:
    """Per-instance sample windows.

    Nothing older than ``window_s`` is ever used; eviction happens lazily when
    a window is read and when new samples arrive. An empty window yields
    ``None`` (unknown), never zero.
    """

    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self.clock = clock
        self._samples: Dict[str, Deque[MetricSample]] = {}

    def record(self, instance_id: str, sample: MetricSample) -> None:
        window = self._samples.setdefault(instance_id, deque())
        window.append(sample)
        self._evict(window, self.clock() - self.window_s)

    def forget(self, instance_id: str) -> None:
        self._samples.pop(instance_id, None)

    def windowed_mean(
        self,
        metric: str,
        window: Optional[float] = None,
        instance_ids: Optional[Iterable[str]] = None,
    ) -> Optional[float]:
        if metric not in METRICS:
            raise ValueError(f"unknown metric: {metric}")
        window = self.window_s if window is None else min(window, self.window_s)
        now = self.clock()
        self._evict_all(now - self.window_s)
        cutoff = now - window

        ids = self._samples.keys() if instance_ids is None else instance_ids
        values = [
            sample.value(metric)
            for instance_id in ids
            for sample in self._samples.get(instance_id, ())
            if sample.timestamp >= cutoff
        ]
        if not values:
            return None
        return sum(values) / len(values)

    def mean_or_raise(
        self,
        metric: str,
        window: Optional[float] = None,
        instance_ids: Optional[Iterable[str]] = None,
    ) -> float:
        value = self.windowed_mean(metric, window, instance_ids)
        if value is None:
            raise StaleMetric(metric, self.window_s if window is None else window)
        return value

    def sample_count(self, instance_id: str) -> int:
        return len(self._samples.get(instance_id, ()))

    def _evict_all(self, cutoff: float) -> None:
        for instance_id in list(self._samples):
            window = self._samples[instance_id]
            self._evict(window, cutoff)
            if not window:
                del self._samples[instance_id]

    @staticmethod
    def _evict(window: Deque[MetricSample], cutoff: float) -> None:
        while window and window[0].timestamp < cutoff:
            window.popleft()


class MetricsCollector:
    """Polls host agents for CPU and pairs it with the router's request counts"""

    def __init__(
        self,
        registry,
        aggregator: MetricsAggregator,
        settings: FleetSettings,
        request_counts: Optional[Callable[[], Dict[str, int]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.aggregator = aggregator
        self.interval = settings.collect_interval_s
        self.timeout = settings.collect_timeout_s
        self.request_counts = request_counts
        self.clock = clock
        self._transport = transport
        self._task: Optional[asyncio.Task] = None

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
            await asyncio.sleep(self.interval)
            try:
                await self.collect_once()
            except Exception as exc:
                logger.warning("Metrics collection error: %s", exc)

    async def collect_once(self) -> int:
        """Take one sample per reachable instance. Returns samples recorded."""
        instances = [
            i for i in self.registry.snapshot()
            if i.state in (InstanceState.PENDING, InstanceState.IN_SERVICE)
        ]
        counts = self.request_counts() if self.request_counts else {}
        recorded = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for instance in instances:
                cpu = await self._fetch_cpu(client, instance)
                if cpu is None:
                    continue
                sample = MetricSample(
                    instance_id=instance.instance_id,
                    timestamp=self.clock(),
                    cpu=cpu,
                    requests=int(counts.get(instance.instance_id, 0)),
                )
                self.aggregator.record(instance.instance_id, sample)
                recorded += 1
        return recorded

    async def _fetch_cpu(self, client: httpx.AsyncClient, instance: Instance) -> Optional[float]:
        if not instance.control_url or not instance.provider_id:
            return None
        url = f"{instance.control_url}/instances/{instance.provider_id}/metrics"
        try:
            resp = await asyncio.wait_for(client.get(url), timeout=self.timeout)
            if resp.status_code != 200:
                logger.debug("Metrics for %s returned %s", instance.instance_id, resp.status_code)
                return None
            cpu = float(resp.json().get("cpu", 0.0))
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError, TypeError) as exc:
            logger.debug("Failed to collect metrics for %s: %s", instance.instance_id, exc)
            return None
        return max(0.0, min(1.0, cpu))
