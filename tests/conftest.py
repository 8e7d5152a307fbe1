"""
Pytest configuration file for all tests.
"""
import pytest
from prometheus_client import CollectorRegistry

from poolscale.autoscaling.readiness import ReportedReadinessGate
from poolscale.cloud.simulated import SimulatedCapacityBackend
from poolscale.observability.metrics import AutoscalerMetrics


class ManualClock:
    """Monotonic clock advanced explicitly by the test."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, now: float) -> float:
        self.now = now
        return self.now


@pytest.fixture
def clock():
    """Manual clock starting at t=0."""
    return ManualClock()


@pytest.fixture
def readiness_gate():
    """Readiness gate driven by explicit reports."""
    return ReportedReadinessGate()


@pytest.fixture
def backend(clock):
    """Simulated capacity backend with a 300s lead time."""
    return SimulatedCapacityBackend({"default_lead_time": 300}, clock=clock)


@pytest.fixture
def metrics():
    """Metrics on a private registry, never served."""
    return AutoscalerMetrics({"enabled": False}, registry=CollectorRegistry())


@pytest.fixture
def autoscaling_config():
    """Two-pool configuration mirroring the LLM serving stack."""
    return {
        "metrics": {"enabled": False},
        "control": {"reconcile_interval": 30, "termination_grace_period": 30},
        "scale_target": {"type": "logging"},
        "capacity_backend": {"type": "simulated", "default_lead_time": 300},
        "readiness": {"type": "reported"},
        "node_classes": {
            "gpu-a10g": {
                "min_units": 0,
                "max_units": 4,
                "lead_time_estimate": 300,
                "idle_timeout": 600,
            },
        },
        "pools": {
            "vllm": {
                "min_replicas": 1,
                "max_replicas": 4,
                "node_class": "gpu-a10g",
                "min_available": 1,
                "triggers": [
                    {
                        "name": "gpu-utilization",
                        "kind": "utilization",
                        "target": 70,
                        "stabilization_window": 300,
                        "source": {"type": "static", "value": 0},
                    },
                    {
                        "name": "queue-depth",
                        "kind": "external",
                        "target": 5,
                        "stabilization_window": 0,
                        "cooldown_period": 300,
                        "source": {"type": "static", "value": 0},
                    },
                ],
            },
            "gateway": {
                "min_replicas": 2,
                "max_replicas": 10,
                "min_available": 1,
                "triggers": [
                    {
                        "name": "cpu-utilization",
                        "kind": "utilization",
                        "target": 60,
                        "source": {"type": "static", "value": 0},
                    },
                ],
            },
        },
    }
