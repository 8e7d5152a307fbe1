"""
Pool autoscaler for model-serving deployments.

This module wires signal pollers, per-trigger scalers, the per-pool arbiter,
replica controllers and node-class provisioners into one control system, and
runs their loops.
"""
import logging
import threading
import time
from collections import deque
from functools import partial
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from poolscale.autoscaling.arbiter import Pool, ScalerArbiter
from poolscale.autoscaling.disruption import DisruptionGuard
from poolscale.autoscaling.errors import CapacityDegraded, ConfigInvalid, SignalUnavailable
from poolscale.autoscaling.provisioner import CapacityProvisioner, NodeClass
from poolscale.autoscaling.readiness import ReadinessGate, create_readiness_gate
from poolscale.autoscaling.replicas import ReplicaController
from poolscale.autoscaling.scaler import PoolScaler
from poolscale.autoscaling.signals import (
    Signal,
    SignalKind,
    SignalPoller,
    SignalReading,
    SignalSource,
    create_signal_source,
)
from poolscale.cloud.factory import CapacityBackendFactory
from poolscale.cloud.provider import CapacityBackend
from poolscale.config.config import Config
from poolscale.config.validation import validate_pool_config, validate_trigger_config
from poolscale.kubernetes.scale_target import ScaleTarget, create_scale_target
from poolscale.observability.metrics import AutoscalerMetrics

logger = logging.getLogger(__name__)


class PoolAutoscaler:
    """Autoscaling control system for a set of serving pools.

    Every trigger polls its signal on its own thread and submits votes to its
    pool's arbiter. A single reconcile loop drives replica controllers toward the
    desired counts and provisions node-class capacity for pending replicas.
    """

    def __init__(
        self,
        config: Union[Config, Dict[str, Any]],
        clock: Callable[[], float] = time.monotonic,
        scale_target: Optional[ScaleTarget] = None,
        capacity_backend: Optional[CapacityBackend] = None,
        readiness_gate: Optional[ReadinessGate] = None,
        signal_sources: Optional[Dict[str, SignalSource]] = None,
        metrics: Optional[AutoscalerMetrics] = None,
        alert_callbacks: Optional[List[Callable[[CapacityDegraded], None]]] = None,
        max_events: int = 1000,
    ):
        """Initialize the pool autoscaler.

        Args:
            config: Autoscaling configuration.
            clock: Monotonic time source shared by every component.
            scale_target: Receiver of desired replica counts. Built from
                ``scale_target`` config if None.
            capacity_backend: External node provisioner. Built from
                ``capacity_backend`` config if None.
            readiness_gate: Replica readiness source. Built from ``readiness``
                config if None.
            signal_sources: Sources keyed by ``"pool/trigger"`` that override the
                configured ``source`` blocks.
            metrics: Metrics exporter. Built from ``metrics`` config if None.
            alert_callbacks: Functions called with a CapacityDegraded alert.
            max_events: Number of scaling events and alerts kept in memory.
        """
        self.config = config if isinstance(config, Config) else Config.from_dict(config)
        self.clock = clock
        self.logger = logging.getLogger(f"{__name__}.PoolAutoscaler")

        control_config = self.config.section("control")
        self.reconcile_interval = control_config.get("reconcile_interval", 30)  # seconds
        self.history_window = control_config.get("history_window", 600)  # seconds
        self.termination_grace_period = control_config.get("termination_grace_period", 30)  # seconds

        self.metrics = metrics or AutoscalerMetrics(self.config.section("metrics"))
        self.scale_target = scale_target or create_scale_target(self.config.section("scale_target"))
        self.readiness_gate = readiness_gate or create_readiness_gate(self.config.section("readiness"), clock)
        self.guard = DisruptionGuard(metrics=self.metrics)
        self.signal_sources = signal_sources or {}
        self.alert_callbacks = list(alert_callbacks or [])

        # State
        self.running = False
        self.reconcile_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.config_errors: List[str] = []
        self.scaling_events: Deque[Dict[str, Any]] = deque(maxlen=max_events)
        self.alerts: Deque[CapacityDegraded] = deque(maxlen=max_events)

        self.node_classes: Dict[str, NodeClass] = {}
        self.provisioners: Dict[str, CapacityProvisioner] = {}
        self.pools: Dict[str, Pool] = {}
        self.arbiters: Dict[str, ScalerArbiter] = {}
        self.controllers: Dict[str, ReplicaController] = {}
        self.scalers: Dict[str, Dict[str, PoolScaler]] = {}
        self.pollers: List[SignalPoller] = []

        self._init_node_classes(capacity_backend)
        self._init_pools()

        self.logger.info(
            f"Configured {len(self.pools)} pools, {len(self.provisioners)} node classes, "
            f"{len(self.pollers)} triggers ({len(self.config_errors)} configuration errors)"
        )

    # Construction

    def _config_error(self, error: ConfigInvalid) -> None:
        self.config_errors.append(str(error))
        self.logger.error(f"Skipping {error.item}: {error.message}")

    def _init_node_classes(self, capacity_backend: Optional[CapacityBackend]) -> None:
        """Create a provisioner per valid node class."""
        node_class_configs = self.config.section("node_classes")
        if not node_class_configs:
            return

        backend = capacity_backend or CapacityBackendFactory.create_backend(
            self.config.section("capacity_backend"), clock=self.clock
        )

        for name, node_class_config in node_class_configs.items():
            try:
                node_class = NodeClass.from_config(name, node_class_config)
            except ConfigInvalid as e:
                self._config_error(e)
                continue

            self.node_classes[name] = node_class
            self.provisioners[name] = CapacityProvisioner(
                node_class,
                backend,
                clock=self.clock,
                metrics=self.metrics,
                alert_callbacks=[self._on_capacity_degraded] + self.alert_callbacks,
            )

    def _init_pools(self) -> None:
        """Create pool, arbiter, controller and triggers for every valid pool."""
        for name, pool_config in self.config.section("pools").items():
            try:
                validate_pool_config(name, pool_config, node_classes=self.node_classes.keys())
            except ConfigInvalid as e:
                self._config_error(e)
                continue

            node_class = pool_config.get("node_class")
            pool = Pool(
                name,
                pool_config["min_replicas"],
                pool_config["max_replicas"],
                node_class=node_class,
                history_window=self.history_window,
            )
            arbiter = ScalerArbiter(pool, clock=self.clock)
            arbiter.add_listener(self._on_desired_changed)
            self.guard.set_budget(name, pool_config.get("min_available", 0))

            self.pools[name] = pool
            self.arbiters[name] = arbiter
            self.controllers[name] = ReplicaController(
                pool,
                self.guard,
                self.readiness_gate,
                provisioner=self.provisioners.get(node_class) if node_class else None,
                clock=self.clock,
                termination_grace_period=self.termination_grace_period,
                metrics=self.metrics,
            )
            self.scalers[name] = {}

            for trigger_config in pool_config.get("triggers") or []:
                try:
                    self._init_trigger(pool, pool_config, trigger_config)
                except ConfigInvalid as e:
                    self._config_error(e)

    def _init_trigger(self, pool: Pool, pool_config: Dict[str, Any], trigger_config: Dict[str, Any]) -> None:
        validate_trigger_config(pool.name, pool_config, trigger_config)

        trigger_name = trigger_config["name"]
        kind = SignalKind(trigger_config["kind"])
        poll_interval = trigger_config.get("poll_interval", 15)
        signal_name = trigger_config.get("signal", trigger_name)
        signal = Signal(signal_name, kind, trigger_config["target"], poll_interval, trigger=trigger_name)

        source_key = f"{pool.name}/{trigger_name}"
        source = self.signal_sources.get(source_key)
        if source is None:
            source = create_signal_source(signal_name, trigger_config.get("source") or {})

        scaler = PoolScaler(
            trigger_name,
            pool.name,
            signal,
            trigger_config.get("min_replicas", pool.min_replicas),
            trigger_config.get("max_replicas", pool.max_replicas),
            stabilization_window=trigger_config.get("stabilization_window", 300),
            cooldown_period=trigger_config.get("cooldown_period"),
            tolerance=trigger_config.get("tolerance", 0.0),
        )
        self.scalers[pool.name][trigger_name] = scaler
        self.pollers.append(
            SignalPoller(
                source,
                poll_interval,
                on_reading=partial(self._on_reading, pool.name, scaler),
                on_unavailable=partial(self._on_signal_unavailable, pool.name, trigger_name),
                clock=self.clock,
            )
        )

    # Callbacks

    def _on_reading(self, pool_name: str, scaler: PoolScaler, reading: SignalReading) -> None:
        pool = self.pools[pool_name]
        vote = scaler.observe(reading, pool.current_replicas)
        self.arbiters[pool_name].submit_vote(scaler.name, vote)
        self.metrics.record_vote(pool_name, scaler.name, reading.value, vote)

    def _on_signal_unavailable(self, pool_name: str, trigger_name: str, error: SignalUnavailable) -> None:
        self.metrics.record_signal_unavailable(pool_name, trigger_name)

    def _on_desired_changed(self, pool_name: str, old: int, new: int) -> None:
        self.scaling_events.append(
            {"timestamp": self.clock(), "pool": pool_name, "from": old, "to": new}
        )
        self.metrics.record_scaling_event(pool_name, old, new)
        self._apply_desired(pool_name, new)

    def _apply_desired(self, pool_name: str, replicas: int) -> None:
        try:
            self.scale_target.set_desired_replicas(pool_name, replicas)
        except Exception as e:
            self.logger.error(f"Error applying desired replicas for pool {pool_name}: {e}")

    def _on_capacity_degraded(self, alert: CapacityDegraded) -> None:
        self.alerts.append(alert)

    # Control loops

    def poll_once(self) -> Dict[str, Optional[SignalReading]]:
        """Poll every trigger once on the calling thread.

        Returns:
            Readings keyed by signal name, None where the signal was unavailable.
        """
        return {poller.source.name: poller.poll_once() for poller in self.pollers}

    def reconcile_once(self, now: Optional[float] = None) -> None:
        """Run one reconciliation step over every pool and node class.

        Args:
            now: Current time. Read from the clock if None.
        """
        now = self.clock() if now is None else now

        for name, controller in self.controllers.items():
            try:
                controller.reconcile(now)
            except Exception as e:
                self.logger.error(f"Error reconciling pool {name}: {e}")

        for name, provisioner in self.provisioners.items():
            demand = sum(
                controller.count_pending()
                for controller in self.controllers.values()
                if controller.pool.node_class == name
            )
            try:
                provisioner.reconcile(demand, now)
            except Exception as e:
                self.logger.error(f"Error reconciling node class {name}: {e}")

    def start(self) -> None:
        """Start the pollers and the reconcile loop."""
        if self.running:
            self.logger.warning("Pool autoscaler is already running")
            return

        self.running = True
        self._stop_event.clear()
        self.metrics.start_server()

        # Publish the starting desired count so the target matches min_replicas
        for name, pool in self.pools.items():
            self._apply_desired(name, pool.desired_replicas)

        for poller in self.pollers:
            poller.start()

        self.reconcile_thread = threading.Thread(target=self._reconcile_loop, name="poolscale-reconcile")
        self.reconcile_thread.daemon = True
        self.reconcile_thread.start()

        self.logger.info("Pool autoscaler started")

    def stop(self) -> None:
        """Stop the pollers and the reconcile loop."""
        self.running = False
        self._stop_event.set()

        for poller in self.pollers:
            poller.stop()

        if self.reconcile_thread:
            self.reconcile_thread.join(timeout=5.0)
            self.reconcile_thread = None

        self.logger.info("Pool autoscaler stopped")

    def _reconcile_loop(self) -> None:
        """Reconcile loop."""
        while self.running:
            try:
                self.reconcile_once()
            except Exception as e:
                self.logger.error(f"Error in reconcile loop: {e}")

            self._stop_event.wait(self.reconcile_interval)

    # Status

    def get_scaling_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get recent desired-count changes, oldest first.

        Args:
            limit: Maximum number of events to return.
        """
        events = list(self.scaling_events)
        if limit is not None:
            events = events[-limit:]
        return events

    def get_status(self) -> Dict[str, Any]:
        """Get the status of every pool, trigger and node class.

        Returns:
            Nested status dictionary.
        """
        pools = {}
        for name, pool in self.pools.items():
            pools[name] = {
                "pool": pool.snapshot(),
                "votes": self.arbiters[name].get_votes(),
                "triggers": {trigger: scaler.get_status() for trigger, scaler in self.scalers[name].items()},
                "replicas": self.controllers[name].get_status(),
            }

        return {
            "running": self.running,
            "pools": pools,
            "node_classes": {name: provisioner.get_status() for name, provisioner in self.provisioners.items()},
            "disruption": self.guard.get_status(),
            "alerts": [str(alert) for alert in self.alerts],
            "config_errors": list(self.config_errors),
        }
