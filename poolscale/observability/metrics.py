"""
Prometheus metrics for the autoscaling control system.
"""
import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)


class AutoscalerMetrics:
    """Prometheus metrics exported by the autoscaler."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, registry: Optional[CollectorRegistry] = None):
        """Initialize AutoscalerMetrics.

        Args:
            config: Metrics configuration (``enabled``, ``port``).
            registry: Registry to register metrics in. A private registry is
                created by default so several instances can coexist.
        """
        config = config or {}
        self.enabled = config.get("enabled", True)
        self.port = config.get("port", 9102)
        self.registry = registry or CollectorRegistry()
        self.server_started = False
        self.logger = logging.getLogger(f"{__name__}.AutoscalerMetrics")

        self._init_prometheus_metrics()

    def _init_prometheus_metrics(self) -> None:
        """Initialize Prometheus metrics."""
        registry = self.registry

        # Pool metrics
        self.pool_metrics = {
            "desired_replicas": Gauge(
                "poolscale_pool_desired_replicas", "Desired replicas set by the arbiter", ["pool"], registry=registry
            ),
            "current_replicas": Gauge(
                "poolscale_pool_current_replicas", "Observed live replicas", ["pool"], registry=registry
            ),
            "ready_replicas": Gauge("poolscale_pool_ready_replicas", "Ready replicas", ["pool"], registry=registry),
            "pending_replicas": Gauge(
                "poolscale_pool_pending_replicas", "Replicas waiting for capacity", ["pool"], registry=registry
            ),
            "scaling_events": Counter(
                "poolscale_pool_scaling_events", "Desired replica changes", ["pool", "direction"], registry=registry
            ),
        }

        # Trigger metrics
        self.trigger_metrics = {
            "signal_value": Gauge(
                "poolscale_trigger_signal_value", "Last signal value", ["pool", "trigger"], registry=registry
            ),
            "vote": Gauge("poolscale_trigger_vote", "Last replica vote", ["pool", "trigger"], registry=registry),
            "signal_unavailable": Counter(
                "poolscale_trigger_signal_unavailable",
                "Polls that produced no reading",
                ["pool", "trigger"],
                registry=registry,
            ),
        }

        # Capacity metrics
        self.capacity_metrics = {
            "units": Gauge(
                "poolscale_node_class_units", "Capacity units by state", ["node_class", "state"], registry=registry
            ),
            "desired_units": Gauge(
                "poolscale_node_class_desired_units", "Last unit directive", ["node_class"], registry=registry
            ),
            "allocated_slots": Gauge(
                "poolscale_node_class_allocated_slots", "Slots bound to replicas", ["node_class"], registry=registry
            ),
            "degraded": Gauge(
                "poolscale_node_class_degraded", "Node class degraded (1) or healthy (0)", ["node_class"], registry=registry
            ),
            "provisioning_failures": Counter(
                "poolscale_node_class_provisioning_failures",
                "Failed provisioning attempts",
                ["node_class"],
                registry=registry,
            ),
        }

        # Disruption metrics
        self.disruption_metrics = {
            "removals": Counter(
                "poolscale_disruption_removals",
                "Removal requests by outcome",
                ["pool", "reason", "outcome"],
                registry=registry,
            ),
        }

    def start_server(self) -> None:
        """Serve the registry over HTTP if enabled."""
        if not self.enabled or self.server_started:
            return
        start_http_server(self.port, registry=self.registry)
        self.server_started = True
        self.logger.info(f"Serving metrics on port {self.port}")

    def record_scaling_event(self, pool: str, old: int, new: int) -> None:
        direction = "up" if new > old else "down"
        self.pool_metrics["desired_replicas"].labels(pool=pool).set(new)
        self.pool_metrics["scaling_events"].labels(pool=pool, direction=direction).inc()

    def record_vote(self, pool: str, trigger: str, value: float, vote: int) -> None:
        self.trigger_metrics["signal_value"].labels(pool=pool, trigger=trigger).set(value)
        self.trigger_metrics["vote"].labels(pool=pool, trigger=trigger).set(vote)

    def record_signal_unavailable(self, pool: str, trigger: str) -> None:
        self.trigger_metrics["signal_unavailable"].labels(pool=pool, trigger=trigger).inc()

    def update_pool(self, pool: str, status: Dict[str, Any]) -> None:
        self.pool_metrics["desired_replicas"].labels(pool=pool).set(status["desired_replicas"])
        self.pool_metrics["current_replicas"].labels(pool=pool).set(status["current_replicas"])
        self.pool_metrics["ready_replicas"].labels(pool=pool).set(status["ready_replicas"])
        self.pool_metrics["pending_replicas"].labels(pool=pool).set(status["pending_replicas"])

    def update_node_class(self, node_class: str, status: Dict[str, Any]) -> None:
        units = self.capacity_metrics["units"]
        units.labels(node_class=node_class, state="Available").set(status["current_units"])
        units.labels(node_class=node_class, state="Requested").set(status["requested_units"])
        units.labels(node_class=node_class, state="Provisioning").set(status["provisioning_units"])
        self.capacity_metrics["allocated_slots"].labels(node_class=node_class).set(status["allocated_slots"])
        self.capacity_metrics["degraded"].labels(node_class=node_class).set(1 if status["degraded"] else 0)

    def record_capacity_directive(self, node_class: str, units: int) -> None:
        self.capacity_metrics["desired_units"].labels(node_class=node_class).set(units)

    def record_provisioning_failure(self, node_class: str) -> None:
        self.capacity_metrics["provisioning_failures"].labels(node_class=node_class).inc()

    def record_removal(self, pool: str, reason: str, allowed: bool) -> None:
        outcome = "allowed" if allowed else "blocked"
        self.disruption_metrics["removals"].labels(pool=pool, reason=reason, outcome=outcome).inc()

    def get_sample(self, name: str, labels: Dict[str, str]) -> Optional[float]:
        """Read one sample from the registry, mainly for status output and tests."""
        return self.registry.get_sample_value(name, labels)
