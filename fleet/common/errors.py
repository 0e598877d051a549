"""Error taxonomy for the fleet control plane"""
from typing import Optional


class FleetError(Exception):
    """Base class for control plane errors"""


class ProbeError(FleetError):
    """A liveness probe did not succeed"""

    def __init__(self, instance_id: str, detail: str = "") -> None:
        self.instance_id = instance_id
        self.detail = detail
        super().__init__(f"{self.__class__.__name__}({instance_id}): {detail}")


class ProbeTimeout(ProbeError):
    pass


class ProbeRefused(ProbeError):
    pass


class ProbeFailed(ProbeError):
    """Non-success status code or a broken response"""


class CapacityExceeded(FleetError):
    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"fleet is at its maximum size ({max_size})")


class InstanceNotFound(FleetError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"instance {instance_id} not found")


class InvalidTransition(FleetError):
    def __init__(self, instance_id: str, current: str, requested: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"instance {instance_id}: {current} -> {requested} is not allowed")


class ProvisioningFailure(FleetError):
    """The external launch/terminate primitive failed"""

    def __init__(self, operation: str, detail: str, target: Optional[str] = None) -> None:
        self.operation = operation
        self.target = target
        super().__init__(f"{operation} failed{f' for {target}' if target else ''}: {detail}")


class RoutingUnavailable(FleetError):
    """No instance can take the request right now"""

    EMPTY = "empty"
    BACKPRESSURE = "backpressure"

    def __init__(self, reason: str, retry_after: int = 1) -> None:
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"service unavailable ({reason})")


class UpstreamUnavailable(FleetError):
    def __init__(self, instance_id: str, detail: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"instance {instance_id} unreachable: {detail}")


class UpstreamTimeout(FleetError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"instance {instance_id} timed out")


class StaleMetric(FleetError):
    def __init__(self, metric: str, window: float) -> None:
        self.metric = metric
        self.window = window
        super().__init__(f"no {metric} samples in the last {window:.0f}s")


class TemplateValidationError(FleetError, ValueError):
    pass


class TemplateNotFound(FleetError):
    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(f"launch template version {version} not found")
