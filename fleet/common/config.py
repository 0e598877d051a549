"""Runtime settings, read from environment variables"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [part.strip().rstrip("/") for part in value.split(",") if part.strip()]


@dataclass
class FleetSettings:
    # fleet bounds
    min_size: int = 2
    max_size: int = 10
    max_step: int = 2
    scale_out_step: int = 2
    scale_in_step: int = 1

    # scaling policy
    scale_out_threshold: float = 0.70
    scale_in_threshold: float = 0.30
    cooldown_s: float = 60.0
    tick_interval_s: float = 30.0
    metric_name: str = "cpu"
    metric_window_s: float = 120.0

    # lifecycle
    drain_grace_s: float = 30.0
    pending_timeout_s: float = 300.0
    unhealthy_grace_s: float = 60.0
    launch_backoff_s: float = 30.0
    launch_backoff_max_s: float = 300.0

    # health checks
    healthy_threshold: int = 3
    unhealthy_threshold: int = 3
    probe_interval_s: float = 10.0
    probe_timeout_s: float = 3.0

    # metric collection
    collect_interval_s: float = 10.0
    collect_timeout_s: float = 3.0

    # routing
    router_instance_capacity: int = 32
    router_queue_size: int = 16
    router_queue_timeout_s: float = 1.0
    request_timeout_s: float = 30.0

    # provisioning
    agent_urls: List[str] = field(default_factory=list)
    provision_timeout_s: float = 60.0

    @classmethod
    def from_env(cls) -> "FleetSettings":
        settings = cls(
            min_size=_env_int("FLEET_MIN_SIZE", cls.min_size),
            max_size=_env_int("FLEET_MAX_SIZE", cls.max_size),
            max_step=_env_int("FLEET_MAX_STEP", cls.max_step),
            scale_out_step=_env_int("FLEET_SCALE_OUT_STEP", cls.scale_out_step),
            scale_in_step=_env_int("FLEET_SCALE_IN_STEP", cls.scale_in_step),
            scale_out_threshold=_env_float("FLEET_SCALE_OUT_THRESHOLD", cls.scale_out_threshold),
            scale_in_threshold=_env_float("FLEET_SCALE_IN_THRESHOLD", cls.scale_in_threshold),
            cooldown_s=_env_float("FLEET_COOLDOWN_S", cls.cooldown_s),
            tick_interval_s=_env_float("FLEET_TICK_INTERVAL_S", cls.tick_interval_s),
            metric_name=os.getenv("FLEET_METRIC", cls.metric_name),
            metric_window_s=_env_float("FLEET_METRIC_WINDOW_S", cls.metric_window_s),
            drain_grace_s=_env_float("FLEET_DRAIN_GRACE_S", cls.drain_grace_s),
            pending_timeout_s=_env_float("FLEET_PENDING_TIMEOUT_S", cls.pending_timeout_s),
            unhealthy_grace_s=_env_float("FLEET_UNHEALTHY_GRACE_S", cls.unhealthy_grace_s),
            launch_backoff_s=_env_float("FLEET_LAUNCH_BACKOFF_S", cls.launch_backoff_s),
            launch_backoff_max_s=_env_float("FLEET_LAUNCH_BACKOFF_MAX_S", cls.launch_backoff_max_s),
            healthy_threshold=_env_int("HEALTHCHECK_HEALTHY_THRESHOLD", cls.healthy_threshold),
            unhealthy_threshold=_env_int("HEALTHCHECK_UNHEALTHY_THRESHOLD", cls.unhealthy_threshold),
            probe_interval_s=_env_float("HEALTHCHECK_INTERVAL", cls.probe_interval_s),
            probe_timeout_s=_env_float("HEALTHCHECK_TIMEOUT", cls.probe_timeout_s),
            collect_interval_s=_env_float("METRICS_COLLECT_INTERVAL", cls.collect_interval_s),
            collect_timeout_s=_env_float("METRICS_COLLECT_TIMEOUT", cls.collect_timeout_s),
            router_instance_capacity=_env_int("ROUTER_INSTANCE_CAPACITY", cls.router_instance_capacity),
            router_queue_size=_env_int("ROUTER_QUEUE_SIZE", cls.router_queue_size),
            router_queue_timeout_s=_env_float("ROUTER_QUEUE_TIMEOUT", cls.router_queue_timeout_s),
            request_timeout_s=_env_float("ROUTER_REQUEST_TIMEOUT", cls.request_timeout_s),
            agent_urls=_env_list("FLEET_AGENT_URLS"),
            provision_timeout_s=_env_float("FLEET_PROVISION_TIMEOUT", cls.provision_timeout_s),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.min_size < 0:
            raise ValueError("min_size must be >= 0")
        if self.max_size < max(1, self.min_size):
            raise ValueError(f"max_size ({self.max_size}) must be >= min_size ({self.min_size}) and >= 1")
        if min(self.max_step, self.scale_out_step, self.scale_in_step) < 1:
            raise ValueError("step sizes must be >= 1")
        if not 0.0 <= self.scale_in_threshold < self.scale_out_threshold:
            raise ValueError("scale_in_threshold must be below scale_out_threshold")
        if min(self.healthy_threshold, self.unhealthy_threshold) < 1:
            raise ValueError("health thresholds must be >= 1")
        for name in (
            "tick_interval_s",
            "metric_window_s",
            "probe_interval_s",
            "probe_timeout_s",
            "collect_interval_s",
            "collect_timeout_s",
            "request_timeout_s",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.router_instance_capacity < 1 or self.router_queue_size < 0:
            raise ValueError("router capacity must be >= 1 and queue size >= 0")


@dataclass
class AgentSettings:
    agent_id: str = "agent-1"
    listen_host: str = "0.0.0.0"
    listen_port: int = 7000
    advertise_host: Optional[str] = None
    stop_grace_s: float = 10.0

    @classmethod
    def from_env(cls) -> "AgentSettings":
        return cls(
            agent_id=os.getenv("AGENT_ID", cls.agent_id),
            listen_host=os.getenv("AGENT_HOST", cls.listen_host),
            listen_port=_env_int("AGENT_PORT", cls.listen_port),
            advertise_host=os.getenv("AGENT_ADVERTISE_HOST"),
            stop_grace_s=_env_float("AGENT_STOP_GRACE_S", cls.stop_grace_s),
        )
