"""Data model definitions"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple


class InstanceState(str, Enum):
    """Instance lifecycle state"""
    PENDING = "pending"
    IN_SERVICE = "in_service"
    DRAINING = "draining"
    TERMINATED = "terminated"


class HealthVerdict(str, Enum):
    """Debounced health verdict"""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ReasonCode(str, Enum):
    """Why the scaling controller produced a decision"""
    NO_DATA = "no_data"
    COOLDOWN = "cooldown"
    WITHIN_BAND = "within_band"
    SCALE_OUT = "scale_out"
    SCALE_IN = "scale_in"
    AT_MAX = "at_max"
    AT_MIN = "at_min"
    WAITING_PENDING = "waiting_pending"
    MANUAL = "manual"


ACTING_REASONS = frozenset({ReasonCode.SCALE_OUT, ReasonCode.SCALE_IN, ReasonCode.MANUAL})

# Transitions accepted by the registry. Same-state writes are no-ops.
ALLOWED_TRANSITIONS: Dict[InstanceState, Tuple[InstanceState, ...]] = {
    InstanceState.PENDING: (
        InstanceState.IN_SERVICE,
        InstanceState.DRAINING,
        InstanceState.TERMINATED,
    ),
    InstanceState.IN_SERVICE: (InstanceState.DRAINING, InstanceState.TERMINATED),
    InstanceState.DRAINING: (InstanceState.TERMINATED,),
    InstanceState.TERMINATED: (),
}


@dataclass(frozen=True)
class Endpoint:
    """Where an instance can be reached.

    ``port`` is the router-facing port served by the reverse proxy adapter,
    ``app_port`` the port the application actually binds.
    """
    host: str
    port: int
    app_port: int

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> Dict:
        return {"host": self.host, "port": self.port, "app_port": self.app_port}


@dataclass(frozen=True)
class Instance:
    """A registered backend instance (immutable, replaced on every change)"""
    instance_id: str
    endpoint: Endpoint
    template_version: int
    state: InstanceState
    created_at: float
    state_changed_at: float
    provider_id: Optional[str] = None
    control_url: Optional[str] = None

    def with_state(self, state: InstanceState, now: float) -> "Instance":
        return replace(self, state=state, state_changed_at=now)

    def to_dict(self) -> Dict:
        return {
            "instance_id": self.instance_id,
            "endpoint": self.endpoint.to_dict(),
            "template_version": self.template_version,
            "state": self.state.value,
            "created_at": self.created_at,
            "state_changed_at": self.state_changed_at,
            "provider_id": self.provider_id,
            "control_url": self.control_url,
        }


@dataclass
class HealthRecord:
    """Per-instance probe bookkeeping.

    The verdict only moves after ``healthy_threshold`` consecutive successes
    or ``unhealthy_threshold`` consecutive failures, never on one sample.
    """
    instance_id: str
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_probe_at: Optional[float] = None
    verdict: HealthVerdict = HealthVerdict.UNKNOWN
    verdict_changed_at: Optional[float] = None
    last_error: Optional[str] = None

    def observe(
        self,
        success: bool,
        now: float,
        healthy_threshold: int,
        unhealthy_threshold: int,
        error: Optional[str] = None,
    ) -> Optional[HealthVerdict]:
        """Apply one probe result. Returns the previous verdict on a change."""
        self.last_probe_at = now
        if success:
            self.consecutive_successes += 1
            self.consecutive_failures = 0
            self.last_error = None
            if (
                self.verdict != HealthVerdict.HEALTHY
                and self.consecutive_successes >= healthy_threshold
            ):
                return self._change(HealthVerdict.HEALTHY, now)
            return None

        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self.last_error = error
        if (
            self.verdict != HealthVerdict.UNHEALTHY
            and self.consecutive_failures >= unhealthy_threshold
        ):
            return self._change(HealthVerdict.UNHEALTHY, now)
        return None

    def _change(self, verdict: HealthVerdict, now: float) -> HealthVerdict:
        previous = self.verdict
        self.verdict = verdict
        self.verdict_changed_at = now
        return previous

    def to_dict(self) -> Dict:
        return {
            "instance_id": self.instance_id,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "last_probe_at": self.last_probe_at,
            "verdict": self.verdict.value,
            "verdict_changed_at": self.verdict_changed_at,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class MetricSample:
    """One load sample for one instance"""
    instance_id: str
    timestamp: float
    cpu: float
    requests: int = 0

    def value(self, metric: str) -> float:
        if metric == "cpu":
            return self.cpu
        if metric == "requests":
            return float(self.requests)
        raise ValueError(f"unknown metric: {metric}")

    def to_dict(self) -> Dict:
        return {
            "instance_id": self.instance_id,
            "timestamp": self.timestamp,
            "cpu": self.cpu,
            "requests": self.requests,
        }


@dataclass(frozen=True)
class ScalingDecision:
    """Result of one controller tick"""
    tick: int
    timestamp: float
    current: int
    target: int
    reason: ReasonCode
    metric: Optional[float] = None

    @property
    def is_noop(self) -> bool:
        return self.reason not in ACTING_REASONS

    def to_dict(self) -> Dict:
        return {
            "tick": self.tick,
            "timestamp": self.timestamp,
            "current": self.current,
            "target": self.target,
            "reason": self.reason.value,
            "metric": self.metric,
            "noop": self.is_noop,
        }


@dataclass(frozen=True)
class LaunchTemplate:
    """Immutable, versioned description of how to start an instance"""
    version: int
    name: str
    command: Tuple[str, ...]
    app_port: int
    listen_port: int
    health_path: str = "/health"
    env: Tuple[Tuple[str, str], ...] = ()
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "name": self.name,
            "command": list(self.command),
            "app_port": self.app_port,
            "listen_port": self.listen_port,
            "health_path": self.health_path,
            "env": dict(self.env),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class LaunchedInstance:
    """What the launch primitive hands back"""
    provider_id: str
    endpoint: Endpoint
    control_url: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "provider_id": self.provider_id,
            "endpoint": self.endpoint.to_dict(),
            "control_url": self.control_url,
        }
