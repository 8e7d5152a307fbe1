"""
Replica lifecycle for one pool.

Replicas follow an explicit state machine::

    Pending -> Scheduled -> Ready -> Terminating -> Gone
                    \\           \\
                     +-> Failed -+-> Gone (replaced by a fresh request)

The controller converges the pool toward the arbiter's desired count. It
creates requests when the pool is short, cancels unscheduled requests first
when it has too many, and sends every other removal through the disruption
guard.
"""
import itertools
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from poolscale.autoscaling.arbiter import Pool
from poolscale.autoscaling.disruption import DisruptionGuard
from poolscale.autoscaling.readiness import ReadinessGate, ReadinessState

logger = logging.getLogger(__name__)


class ReplicaState(Enum):
    """Lifecycle of a replica request."""

    PENDING = "Pending"
    SCHEDULED = "Scheduled"
    READY = "Ready"
    TERMINATING = "Terminating"
    GONE = "Gone"
    FAILED = "Failed"


LIVE_STATES = (ReplicaState.PENDING, ReplicaState.SCHEDULED, ReplicaState.READY)


class ReplicaRequest:
    """One replica of a pool."""

    def __init__(self, replica_id: str, pool: str, created_at: float, replaces: Optional[str] = None, seq: int = 0):
        self.replica_id = replica_id
        self.seq = seq
        self.pool = pool
        self.state = ReplicaState.PENDING
        self.created_at = created_at
        self.scheduled_at: Optional[float] = None
        self.ready_at: Optional[float] = None
        self.terminating_at: Optional[float] = None
        self.unit_id: Optional[str] = None
        self.replaces = replaces
        self.replaced_by: Optional[str] = None
        self.reason: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_retiring(self) -> bool:
        return self.replaced_by is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replica_id": self.replica_id,
            "pool": self.pool,
            "state": self.state.value,
            "unit_id": self.unit_id,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "replaces": self.replaces,
            "replaced_by": self.replaced_by,
            "reason": self.reason,
        }


class ReplicaController:
    """Drives the replicas of one pool toward its desired count."""

    def __init__(
        self,
        pool: Pool,
        guard: DisruptionGuard,
        readiness_gate: ReadinessGate,
        provisioner=None,
        clock: Callable[[], float] = time.monotonic,
        termination_grace_period: float = 30.0,
        metrics=None,
        max_history: int = 200,
    ):
        """Initialize the controller.

        Args:
            pool: Pool whose replicas are managed.
            guard: Disruption guard gating removals.
            readiness_gate: Source of per-replica readiness.
            provisioner: CapacityProvisioner of the pool's node class, or None if the
                pool needs no scarce resource.
            clock: Monotonic time source.
            termination_grace_period: Seconds a replica stays Terminating before it is Gone.
            metrics: Optional AutoscalerMetrics.
            max_history: Number of finished replicas kept for status reporting.
        """
        self.pool = pool
        self.guard = guard
        self.readiness_gate = readiness_gate
        self.provisioner = provisioner
        self.clock = clock
        self.termination_grace_period = termination_grace_period
        self.metrics = metrics

        self.replicas: Dict[str, ReplicaRequest] = {}
        self.finished: Deque[Dict[str, Any]] = deque(maxlen=max_history)
        self._ids = itertools.count(1)
        self.lock = threading.RLock()
        self.logger = logging.getLogger(f"{__name__}.ReplicaController.{pool.name}")

        guard.register_pool(pool.name, self)

    # Views used by the guard and the provisioner

    def has_replica(self, replica_id: str) -> bool:
        with self.lock:
            replica = self.replicas.get(replica_id)
            return replica is not None and replica.is_live

    def count_ready(self) -> int:
        with self.lock:
            return sum(1 for r in self.replicas.values() if r.state == ReplicaState.READY)

    def count_pending(self) -> int:
        """Number of replicas waiting for capacity."""
        with self.lock:
            return sum(1 for r in self.replicas.values() if r.state == ReplicaState.PENDING)

    def get_replicas(self, state: Optional[ReplicaState] = None) -> List[ReplicaRequest]:
        with self.lock:
            replicas = sorted(self.replicas.values(), key=lambda r: (r.created_at, r.seq))
            if state is not None:
                replicas = [r for r in replicas if r.state == state]
            return replicas

    def _serving(self) -> List[ReplicaRequest]:
        """Live replicas that count toward the desired total."""
        return [r for r in self.get_replicas() if r.is_live and not r.is_retiring]

    # Transitions

    def _create(self, now: float, replaces: Optional[str] = None) -> ReplicaRequest:
        seq = next(self._ids)
        replica = ReplicaRequest(f"{self.pool.name}-{seq}", self.pool.name, now, replaces=replaces, seq=seq)
        self.replicas[replica.replica_id] = replica
        return replica

    def _finish(self, replica: ReplicaRequest, now: float) -> None:
        """Move a replica to Gone and release everything it holds."""
        replica.state = ReplicaState.GONE
        if self.provisioner is not None:
            self.provisioner.unbind(replica.replica_id, now)
        self.readiness_gate.forget(self.pool.name, replica.replica_id)

        if replica.replaces and replica.replaces in self.replicas:
            # A surge that never served: the old replica is no longer being replaced
            self.replicas[replica.replaces].replaced_by = None
        if replica.replaced_by and replica.replaced_by in self.replicas:
            self.replicas[replica.replaced_by].replaces = None

        del self.replicas[replica.replica_id]
        self.finished.append(replica.to_dict())

    def remove_replica(self, replica_id: str, reason: str = "scale-down") -> bool:
        """Remove a replica through the disruption guard.

        Pending replicas hold no capacity and are canceled without consulting
        the guard. Scheduled and Ready replicas are marked Terminating only if
        the guard allows it; the check and the transition are atomic.

        Args:
            replica_id: Replica to remove.
            reason: Why the replica is being removed.

        Returns:
            True if the replica is terminating or gone, False if the removal was blocked.
        """
        now = self.clock()
        with self.lock:
            replica = self.replicas.get(replica_id)
            if replica is None or replica.state in (ReplicaState.TERMINATING, ReplicaState.GONE):
                return True
            if replica.state == ReplicaState.FAILED:
                return True

            if replica.state == ReplicaState.PENDING:
                replica.reason = f"canceled: {reason}"
                self.logger.info(f"Canceled pending replica {replica_id} ({reason})")
                self._finish(replica, now)
                return True

            allowed = self.guard.may_remove(self.pool.name, replica_id)
            self.guard.record_decision(self.pool.name, replica_id, reason, allowed)
            if not allowed:
                return False

            replica.state = ReplicaState.TERMINATING
            replica.terminating_at = now
            replica.reason = reason
            if replica.replaced_by and replica.replaced_by in self.replicas and reason != "rolling-update":
                # Removed by someone else while being replaced: the surge now serves on its own
                self.replicas[replica.replaced_by].replaces = None
                replica.replaced_by = None
            return True

    def request_replacement(self, replica_id: str) -> Optional[str]:
        """Start a rolling replacement of a replica.

        A surge replica is created first; the old replica becomes eligible for
        removal only once the surge is Ready.

        Returns:
            Id of the surge replica, or None if the replica cannot be replaced.
        """
        now = self.clock()
        with self.lock:
            replica = self.replicas.get(replica_id)
            if replica is None or not replica.is_live:
                return None
            if replica.is_retiring:
                return replica.replaced_by

            surge = self._create(now, replaces=replica_id)
            replica.replaced_by = surge.replica_id
            self.logger.info(f"Replacing {replica_id} with surge replica {surge.replica_id}")
            return surge.replica_id

    # Reconciliation

    def reconcile(self, now: Optional[float] = None) -> None:
        """Run one reconciliation step."""
        now = self.clock() if now is None else now
        with self.lock:
            self._handle_evictions(now)
            self._poll_readiness(now)
            self._replace_failed(now)
            self._finish_terminating(now)
            self._retire_replaced()
            self._scale_to_desired(now)
            self._schedule_pending(now)
            self.pool.current_replicas = len(self._serving())

        if self.metrics is not None:
            self.metrics.update_pool(self.pool.name, self.get_status())

    def _handle_evictions(self, now: float) -> None:
        if self.provisioner is None:
            return
        for replica_id in self.provisioner.take_evicted(owns=lambda replica_id: replica_id in self.replicas):
            replica = self.replicas.get(replica_id)
            if replica is not None and replica.state != ReplicaState.GONE:
                replica.state = ReplicaState.FAILED
                replica.reason = "capacity unit lost"
                replica.unit_id = None

    def _poll_readiness(self, now: float) -> None:
        for replica in self.get_replicas():
            if replica.state not in (ReplicaState.SCHEDULED, ReplicaState.READY):
                continue

            state = self.readiness_gate.get_state(self.pool.name, replica.replica_id)
            if state == ReadinessState.FAILED:
                replica.state = ReplicaState.FAILED
                replica.reason = "readiness failed"
            elif state == ReadinessState.READY and replica.state == ReplicaState.SCHEDULED:
                replica.state = ReplicaState.READY
                replica.ready_at = now
                self.logger.info(f"Replica {replica.replica_id} ready after {now - replica.created_at:.0f}s")
            elif state == ReadinessState.NOT_READY and replica.state == ReplicaState.READY:
                replica.state = ReplicaState.SCHEDULED
                self.logger.warning(f"Replica {replica.replica_id} is no longer ready")

    def _replace_failed(self, now: float) -> None:
        for replica in self.get_replicas(ReplicaState.FAILED):
            surge_for = replica.replaces
            retiring = replica.replaced_by
            self.logger.warning(f"Replica {replica.replica_id} failed ({replica.reason}), replacing")
            self._finish(replica, now)

            if surge_for and surge_for in self.replicas and self.replicas[surge_for].is_live:
                # Keep the rolling replacement going with a fresh surge
                surge = self._create(now, replaces=surge_for)
                self.replicas[surge_for].replaced_by = surge.replica_id
            elif retiring:
                self.logger.debug(f"Surge {retiring} now serves in place of failed {replica.replica_id}")

    def _finish_terminating(self, now: float) -> None:
        for replica in self.get_replicas(ReplicaState.TERMINATING):
            if now - replica.terminating_at >= self.termination_grace_period:
                self._finish(replica, now)

    def _retire_replaced(self) -> None:
        for replica in self.get_replicas():
            if not replica.is_retiring or not replica.is_live:
                continue
            surge = self.replicas.get(replica.replaced_by)
            if surge is None or surge.state != ReplicaState.READY:
                continue
            if self.remove_replica(replica.replica_id, reason="rolling-update"):
                surge.replaces = None

    def _scale_to_desired(self, now: float) -> None:
        desired = self.pool.desired_replicas
        serving = self._serving()

        if len(serving) < desired:
            for _ in range(desired - len(serving)):
                replica = self._create(now)
                self.logger.info(f"Created replica request {replica.replica_id} (desired={desired})")
            return

        excess = len(serving) - desired
        if excess <= 0:
            return

        order = {ReplicaState.PENDING: 0, ReplicaState.SCHEDULED: 1, ReplicaState.READY: 2}
        candidates = sorted(serving, key=lambda r: (order[r.state], -r.created_at, -r.seq))
        for replica in candidates[:excess]:
            if not self.remove_replica(replica.replica_id, reason="scale-down"):
                # Backpressure: retry on the next tick
                break

    def _schedule_pending(self, now: float) -> None:
        for replica in self.get_replicas(ReplicaState.PENDING):
            if self.provisioner is not None:
                unit_id = self.provisioner.bind(replica.replica_id)
                if unit_id is None:
                    continue
                replica.unit_id = unit_id

            replica.state = ReplicaState.SCHEDULED
            replica.scheduled_at = now
            self.readiness_gate.scheduled(self.pool.name, replica.replica_id, now)

    def get_status(self) -> Dict[str, Any]:
        """Get replica counts by state and per-replica detail."""
        with self.lock:
            counts = {state.value: 0 for state in ReplicaState}
            for replica in self.replicas.values():
                counts[replica.state.value] += 1
            return {
                "pool": self.pool.name,
                "desired_replicas": self.pool.desired_replicas,
                "current_replicas": self.pool.current_replicas,
                "ready_replicas": counts[ReplicaState.READY.value],
                "pending_replicas": counts[ReplicaState.PENDING.value],
                "states": counts,
                "replicas": [r.to_dict() for r in self.get_replicas()],
            }
