"""Fleet control plane: registry, health checking, routing and autoscaling."""

__version__ = "0.1.0"
