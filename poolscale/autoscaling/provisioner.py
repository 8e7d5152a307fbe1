"""
Capacity provisioner for one node class.

Bridges replica demand to physical units gated by a scarce, exclusive
resource (one accelerator per slot). Units are requested through a
:class:`CapacityBackend` and tracked through an explicit state machine::

    Requested -> Provisioning -> Available -> Terminating

Provisioning takes minutes, so :meth:`CapacityProvisioner.reconcile` never
waits on it: pending units are rechecked on the next tick.
"""
import itertools
import logging
import math
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from poolscale.autoscaling.errors import CapacityDegraded, ProvisioningFailure
from poolscale.cloud.provider import CapacityBackend
from poolscale.config.validation import validate_node_class_config
from poolscale.utils.circuit_breaker import CircuitBreaker, CircuitState, compute_backoff

logger = logging.getLogger(__name__)


class UnitState(Enum):
    """Lifecycle of a capacity unit."""

    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    AVAILABLE = "Available"
    TERMINATING = "Terminating"


class NodeClass:
    """A category of capacity units sharing a label/taint signature."""

    def __init__(
        self,
        name: str,
        min_units: int = 0,
        max_units: int = 1,
        slots_per_unit: int = 1,
        lead_time_estimate: float = 300.0,
        idle_timeout: float = 600.0,
        retry_factor: float = 2.0,
        max_retries: int = 3,
        backoff_base: float = 30.0,
        backoff_factor: float = 2.0,
        backoff_max: float = 600.0,
        degraded_recovery: float = 900.0,
        labels: Optional[Dict[str, str]] = None,
        taints: Optional[List[Dict[str, str]]] = None,
    ):
        self.name = name
        self.min_units = min_units
        self.max_units = max_units
        self.slots_per_unit = slots_per_unit
        self.lead_time_estimate = lead_time_estimate
        self.idle_timeout = idle_timeout
        self.retry_factor = retry_factor
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_max = backoff_max
        self.degraded_recovery = degraded_recovery
        self.labels = labels or {}
        self.taints = taints or []

    @property
    def provisioning_timeout(self) -> float:
        return self.lead_time_estimate * self.retry_factor

    @classmethod
    def from_config(cls, name: str, config: Dict[str, Any]) -> "NodeClass":
        """Create a NodeClass from its configuration block.

        Raises:
            ConfigInvalid: If bounds or timings are inconsistent.
        """
        validate_node_class_config(name, config)
        keys = (
            "min_units", "max_units", "slots_per_unit", "lead_time_estimate", "idle_timeout",
            "retry_factor", "max_retries", "backoff_base", "backoff_factor", "backoff_max",
            "degraded_recovery", "labels", "taints",
        )
        return cls(name, **{key: config[key] for key in keys if key in config})


class CapacityUnit:
    """One physical unit of a node class."""

    def __init__(self, unit_id: str, node_class: str, requested_at: float, seq: int = 0):
        self.unit_id = unit_id
        self.seq = seq
        self.node_class = node_class
        self.state = UnitState.REQUESTED
        self.external_id: Optional[str] = None
        self.requested_at = requested_at
        self.provisioning_started: Optional[float] = None
        self.available_at: Optional[float] = None
        self.idle_since: Optional[float] = None
        self.attempts = 0
        self.next_attempt_at = requested_at
        self.bound: Set[str] = set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "state": self.state.value,
            "external_id": self.external_id,
            "requested_at": self.requested_at,
            "available_at": self.available_at,
            "attempts": self.attempts,
            "replicas": sorted(self.bound),
        }


class CapacityProvisioner:
    """Owns the units of one node class and their replica bindings."""

    def __init__(
        self,
        node_class: NodeClass,
        backend: CapacityBackend,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
        alert_callbacks: Optional[List[Callable[[CapacityDegraded], None]]] = None,
    ):
        """Initialize the provisioner.

        Args:
            node_class: Node class this provisioner owns.
            backend: External node provisioner receiving unit directives.
            clock: Monotonic time source.
            metrics: Optional AutoscalerMetrics.
            alert_callbacks: Functions called with a CapacityDegraded alert.
        """
        self.node_class = node_class
        self.backend = backend
        self.clock = clock
        self.metrics = metrics
        self.alert_callbacks = list(alert_callbacks or [])

        self.units: Dict[str, CapacityUnit] = {}
        self.bindings: Dict[str, str] = {}
        self.evicted: List[str] = []
        self.last_pushed: Optional[int] = None
        self.degraded = False
        self.last_error: Optional[str] = None
        self._unit_ids = itertools.count(1)

        self.circuit_breaker = CircuitBreaker(
            name=f"capacity-{node_class.name}",
            failure_threshold=max(1, node_class.max_retries),
            recovery_timeout=node_class.degraded_recovery,
            clock=clock,
        )
        self.lock = threading.RLock()
        self.logger = logging.getLogger(f"{__name__}.CapacityProvisioner.{node_class.name}")

    # Read-only views

    def _units_in(self, *states: UnitState) -> List[CapacityUnit]:
        return sorted(
            (unit for unit in self.units.values() if unit.state in states),
            key=lambda unit: (unit.requested_at, unit.seq),
        )

    @property
    def current_units(self) -> int:
        with self.lock:
            return len(self._units_in(UnitState.AVAILABLE))

    @property
    def pending_units(self) -> int:
        with self.lock:
            return len(self._units_in(UnitState.REQUESTED, UnitState.PROVISIONING))

    @property
    def allocated_slots(self) -> int:
        with self.lock:
            return len(self.bindings)

    def free_slots(self) -> int:
        with self.lock:
            return sum(
                self.node_class.slots_per_unit - len(unit.bound) for unit in self._units_in(UnitState.AVAILABLE)
            )

    def unit_of(self, replica_id: str) -> Optional[str]:
        with self.lock:
            return self.bindings.get(replica_id)

    # Replica bindings

    def bind(self, replica_id: str) -> Optional[str]:
        """Allocate a scarce-resource slot to a replica.

        Args:
            replica_id: Replica identifier.

        Returns:
            Unit id, or None if no available unit has a free slot.
        """
        with self.lock:
            if replica_id in self.bindings:
                return self.bindings[replica_id]

            candidates = [
                unit for unit in self._units_in(UnitState.AVAILABLE)
                if len(unit.bound) < self.node_class.slots_per_unit
            ]
            if not candidates:
                return None

            # Fill partially used units first so idle ones can drain
            unit = max(candidates, key=lambda u: len(u.bound))
            unit.bound.add(replica_id)
            unit.idle_since = None
            self.bindings[replica_id] = unit.unit_id
            return unit.unit_id

    def unbind(self, replica_id: str, now: Optional[float] = None) -> None:
        """Release a replica's slot. Called once the replica is gone."""
        now = self.clock() if now is None else now
        with self.lock:
            unit_id = self.bindings.pop(replica_id, None)
            if unit_id is None:
                return
            unit = self.units.get(unit_id)
            if unit is None:
                return
            unit.bound.discard(replica_id)
            if not unit.bound:
                unit.idle_since = now

    def take_evicted(self, owns: Optional[Callable[[str], bool]] = None) -> List[str]:
        """Return and clear the replicas whose unit disappeared.

        Args:
            owns: Predicate selecting the caller's replicas. Other evictions stay
                queued for the pool that owns them.
        """
        with self.lock:
            if owns is None:
                evicted, self.evicted = self.evicted, []
                return evicted
            evicted = [replica_id for replica_id in self.evicted if owns(replica_id)]
            self.evicted = [replica_id for replica_id in self.evicted if not owns(replica_id)]
            return evicted

    # Reconciliation

    def reconcile(self, demand: int, now: Optional[float] = None) -> None:
        """Run one provisioning step.

        Args:
            demand: Number of replicas of this node class waiting for a slot.
            now: Current time.
        """
        now = self.clock() if now is None else now
        with self.lock:
            self._sync_ready_units(now)
            self._check_timeouts(now)
            self._scale_for_demand(demand, now)
            self._deprovision_idle(demand, now)
            self._push_directive(now)
            self._update_degraded()

        if self.metrics is not None:
            self.metrics.update_node_class(self.node_class.name, self.get_status())

    def _new_unit(self, now: float) -> CapacityUnit:
        seq = next(self._unit_ids)
        unit = CapacityUnit(f"{self.node_class.name}-{seq}", self.node_class.name, now, seq=seq)
        self.units[unit.unit_id] = unit
        return unit

    def _sync_ready_units(self, now: float) -> None:
        try:
            ready_ids = self.backend.list_ready_units(self.node_class.name)
        except ProvisioningFailure as e:
            self.logger.warning(f"Could not observe units: {e}")
            return

        ready_set = set(ready_ids)
        known = {unit.external_id: unit for unit in self.units.values() if unit.external_id}

        for unit in self._units_in(UnitState.AVAILABLE):
            if unit.external_id not in ready_set:
                self._lose_unit(unit)

        waiting = self._units_in(UnitState.PROVISIONING)
        for external_id in ready_ids:
            if external_id in known:
                continue
            if waiting:
                unit = waiting.pop(0)
                elapsed = now - unit.requested_at
                self.logger.info(f"Unit {unit.unit_id} available as {external_id} after {elapsed:.0f}s")
            else:
                unit = self._new_unit(now)
                self.logger.info(f"Adopted unrequested ready unit {external_id} as {unit.unit_id}")
            unit.state = UnitState.AVAILABLE
            unit.external_id = external_id
            unit.available_at = now
            unit.idle_since = now
            unit.attempts = 0
            self.circuit_breaker.record_success()

    def _lose_unit(self, unit: CapacityUnit) -> None:
        self.logger.warning(
            f"Unit {unit.unit_id} ({unit.external_id}) disappeared, evicting {len(unit.bound)} replicas"
        )
        for replica_id in unit.bound:
            self.bindings.pop(replica_id, None)
            self.evicted.append(replica_id)
        del self.units[unit.unit_id]
        # Re-assert the directive without the lost unit
        self.last_pushed = None

    def _record_attempt_failure(self, unit: CapacityUnit, now: float, error: str) -> None:
        unit.attempts += 1
        unit.state = UnitState.REQUESTED
        unit.provisioning_started = None
        nc = self.node_class
        unit.next_attempt_at = now + compute_backoff(
            unit.attempts - 1, base_delay=nc.backoff_base, backoff_factor=nc.backoff_factor, max_delay=nc.backoff_max
        )
        self.last_error = error
        if self.metrics is not None:
            self.metrics.record_provisioning_failure(nc.name)

    def _check_timeouts(self, now: float) -> None:
        """Return timed-out units to Requested, counting one failed round per tick."""
        timeout = self.node_class.provisioning_timeout
        timed_out = 0
        for unit in self._units_in(UnitState.PROVISIONING):
            if now - unit.provisioning_started <= timeout:
                continue
            self.logger.warning(
                f"Unit {unit.unit_id} not available after {now - unit.provisioning_started:.0f}s "
                f"(timeout {timeout:.0f}s), retrying"
            )
            self._record_attempt_failure(unit, now, "provisioning timed out")
            timed_out += 1

        if timed_out:
            self.circuit_breaker.record_failure()

    def _scale_for_demand(self, demand: int, now: float) -> None:
        nc = self.node_class
        pending = self._units_in(UnitState.REQUESTED, UnitState.PROVISIONING)
        total = len(self._units_in(UnitState.REQUESTED, UnitState.PROVISIONING, UnitState.AVAILABLE))
        shortfall = demand - self.free_slots() - len(pending) * nc.slots_per_unit

        if shortfall > 0:
            wanted = int(math.ceil(shortfall / nc.slots_per_unit))
            room = max(0, nc.max_units - total)
            count = min(wanted, room)
            if count < wanted:
                self.logger.warning(
                    f"Demand needs {wanted} more units but node class is at max_units={nc.max_units}"
                )
            for _ in range(count):
                unit = self._new_unit(now)
                self.logger.info(f"Requested unit {unit.unit_id} for {demand} pending replicas")
            total += count
        elif shortfall < 0 and pending:
            surplus = min(-shortfall // nc.slots_per_unit, len(pending), max(0, total - nc.min_units))
            # Cancel newest first, available capacity is never canceled
            for unit in list(reversed(pending))[:surplus]:
                self.logger.info(f"Canceled pending unit {unit.unit_id} ({unit.state.value}), demand dropped")
                del self.units[unit.unit_id]
                total -= 1

        while total < nc.min_units:
            unit = self._new_unit(now)
            self.logger.info(f"Requested unit {unit.unit_id} to keep min_units={nc.min_units}")
            total += 1

    def _deprovision_idle(self, demand: int, now: float) -> None:
        if demand > 0:
            return

        nc = self.node_class
        total = len(self._units_in(UnitState.REQUESTED, UnitState.PROVISIONING, UnitState.AVAILABLE))
        idle = [
            unit for unit in self._units_in(UnitState.AVAILABLE)
            if not unit.bound and unit.idle_since is not None and now - unit.idle_since > nc.idle_timeout
        ]
        for unit in sorted(idle, key=lambda u: u.idle_since):
            if total <= nc.min_units:
                break
            unit.state = UnitState.TERMINATING
            try:
                self.backend.terminate_unit(nc.name, unit.external_id)
            except ProvisioningFailure as e:
                self.logger.warning(f"Failed to deprovision {unit.unit_id}: {e}")
                unit.state = UnitState.AVAILABLE
                continue

            self.logger.info(
                f"Deprovisioned unit {unit.unit_id} ({unit.external_id}) after {now - unit.idle_since:.0f}s idle"
            )
            del self.units[unit.unit_id]
            total -= 1
            if self.last_pushed:
                self.last_pushed -= 1

    def _push_directive(self, now: float) -> None:
        allowed = self.circuit_breaker.allow_request()
        due = [
            unit for unit in self._units_in(UnitState.REQUESTED)
            if allowed and unit.next_attempt_at <= now
        ]
        target = len(self._units_in(UnitState.PROVISIONING, UnitState.AVAILABLE)) + len(due)

        if target == self.last_pushed and not due:
            return

        try:
            self.backend.set_desired_units(self.node_class.name, target)
        except ProvisioningFailure as e:
            self.logger.warning(f"Directive {self.node_class.name}={target} failed: {e}")
            for unit in due:
                self._record_attempt_failure(unit, now, str(e))
            self.circuit_breaker.record_failure()
            return

        self.last_pushed = target
        for unit in due:
            unit.state = UnitState.PROVISIONING
            unit.provisioning_started = now
        if self.metrics is not None:
            self.metrics.record_capacity_directive(self.node_class.name, target)

    def _update_degraded(self) -> None:
        state = self.circuit_breaker.get_state()
        if state == CircuitState.OPEN and not self.degraded:
            self.degraded = True
            attempts = max([unit.attempts for unit in self.units.values()] or [0])
            alert = CapacityDegraded(self.node_class.name, attempts, self.last_error)
            self.logger.error(f"ALERT: {alert}")
            for callback in self.alert_callbacks:
                try:
                    callback(alert)
                except Exception as e:
                    self.logger.error(f"Alert callback failed: {e}")
        elif state == CircuitState.CLOSED and self.degraded:
            self.degraded = False
            self.logger.info(f"Node class {self.node_class.name} recovered")

    def get_status(self) -> Dict[str, Any]:
        """Get a snapshot of the node class.

        Returns:
            Dictionary of unit counts, degraded flag and per-unit detail.
        """
        with self.lock:
            return {
                "node_class": self.node_class.name,
                "min_units": self.node_class.min_units,
                "max_units": self.node_class.max_units,
                "current_units": len(self._units_in(UnitState.AVAILABLE)),
                "pending_units": len(self._units_in(UnitState.REQUESTED, UnitState.PROVISIONING)),
                "requested_units": len(self._units_in(UnitState.REQUESTED)),
                "provisioning_units": len(self._units_in(UnitState.PROVISIONING)),
                "allocated_slots": len(self.bindings),
                "free_slots": self.free_slots(),
                "degraded": self.degraded,
                "circuit_state": self.circuit_breaker.get_state().value,
                "last_error": self.last_error,
                "units": [unit.to_dict() for unit in self._units_in(*UnitState)],
            }
