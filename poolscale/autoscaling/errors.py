"""
Error taxonomy for the pool autoscaling control system.

Removal blocked by a disruption budget is deliberately absent: it is
backpressure and is reported as ``False`` by the guard. A failed replica is a
state transition, not an exception.
"""
from typing import Optional


class PoolScaleError(Exception):
    """Base class for autoscaling errors."""

    pass


class SignalUnavailable(PoolScaleError):
    """Raised when a signal cannot be read. Transient: no vote is emitted."""

    def __init__(self, signal_name: str, reason: str = ""):
        self.signal_name = signal_name
        self.reason = reason
        super().__init__(f"Signal {signal_name} unavailable: {reason}" if reason else f"Signal {signal_name} unavailable")


class ProvisioningFailure(PoolScaleError):
    """Raised by a capacity backend when a directive or observation fails."""

    def __init__(self, node_class: str, reason: str = ""):
        self.node_class = node_class
        self.reason = reason
        super().__init__(f"Provisioning failed for node class {node_class}: {reason}")


class CapacityDegraded(PoolScaleError):
    """Alert raised when a node class exhausts its provisioning retries.

    Instances are handed to alert callbacks rather than raised out of the
    reconcile loop, so scaling of other pools continues.
    """

    def __init__(self, node_class: str, attempts: int, last_error: Optional[str] = None):
        self.node_class = node_class
        self.attempts = attempts
        self.last_error = last_error
        message = f"Node class {node_class} degraded after {attempts} failed provisioning attempts"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class ConfigInvalid(PoolScaleError):
    """Raised when a pool, trigger or node class configuration is rejected."""

    def __init__(self, item: str, message: str):
        self.item = item
        self.message = message
        super().__init__(f"Invalid configuration for {item}: {message}")
