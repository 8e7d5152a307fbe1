"""
Readiness gate: the health-check collaborator's view of each replica.

The control system never probes replicas itself. It consumes a tri-state per
replica from a :class:`ReadinessGate` that is either pushed to by the health
checker or simulated.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from poolscale.autoscaling.errors import ConfigInvalid

logger = logging.getLogger(__name__)


class ReadinessState(Enum):
    """Readiness of a single replica."""

    NOT_READY = "NotReady"  # Excluded from routing and from the ready count
    READY = "Ready"  # Counted as available, receives traffic
    FAILED = "Failed"  # Terminal, the replica is replaced


class ReadinessGate(ABC):
    """Interface reporting the readiness of replicas."""

    @abstractmethod
    def get_state(self, pool: str, replica_id: str) -> ReadinessState:
        """Get the readiness of a replica.

        Args:
            pool: Pool name.
            replica_id: Replica identifier.

        Returns:
            Readiness state. Unknown replicas are NOT_READY.
        """
        pass

    def scheduled(self, pool: str, replica_id: str, timestamp: float) -> None:
        """Notification that a replica has been bound to capacity."""
        pass

    def forget(self, pool: str, replica_id: str) -> None:
        """Notification that a replica is gone."""
        pass


class ReportedReadinessGate(ReadinessGate):
    """Gate whose states are pushed by an external health checker."""

    def __init__(self):
        self.states: Dict[Tuple[str, str], ReadinessState] = {}
        self.lock = threading.Lock()

    def report(self, pool: str, replica_id: str, state: ReadinessState) -> None:
        """Record the latest readiness of a replica."""
        with self.lock:
            self.states[(pool, replica_id)] = state

    def get_state(self, pool: str, replica_id: str) -> ReadinessState:
        with self.lock:
            return self.states.get((pool, replica_id), ReadinessState.NOT_READY)

    def forget(self, pool: str, replica_id: str) -> None:
        with self.lock:
            self.states.pop((pool, replica_id), None)


class SimulatedReadinessGate(ReadinessGate):
    """Gate that reports replicas ready a fixed startup delay after scheduling.

    Used for dry runs where no health checker is attached. Model servers take
    minutes to load weights, so the delay is configurable per pool.
    """

    def __init__(
        self,
        startup_seconds: float = 120.0,
        pool_startup_seconds: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.startup_seconds = startup_seconds
        self.pool_startup_seconds = pool_startup_seconds or {}
        self.clock = clock
        self.scheduled_at: Dict[Tuple[str, str], float] = {}
        self.failed: set = set()
        self.lock = threading.Lock()

    def scheduled(self, pool: str, replica_id: str, timestamp: float) -> None:
        with self.lock:
            self.scheduled_at.setdefault((pool, replica_id), timestamp)

    def fail(self, pool: str, replica_id: str) -> None:
        """Mark a replica as failed, e.g. to exercise replacement."""
        with self.lock:
            self.failed.add((pool, replica_id))

    def get_state(self, pool: str, replica_id: str) -> ReadinessState:
        key = (pool, replica_id)
        with self.lock:
            if key in self.failed:
                return ReadinessState.FAILED
            started = self.scheduled_at.get(key)
        if started is None:
            return ReadinessState.NOT_READY

        delay = self.pool_startup_seconds.get(pool, self.startup_seconds)
        if self.clock() - started >= delay:
            return ReadinessState.READY
        return ReadinessState.NOT_READY

    def forget(self, pool: str, replica_id: str) -> None:
        with self.lock:
            self.scheduled_at.pop((pool, replica_id), None)
            self.failed.discard((pool, replica_id))


def create_readiness_gate(
    config: Optional[Dict[str, Any]] = None, clock: Callable[[], float] = time.monotonic
) -> ReadinessGate:
    """Create the readiness gate described by the ``readiness`` config block.

    Raises:
        ConfigInvalid: If the gate type is unknown.
    """
    config = config or {}
    gate_type = config.get("type", "reported")

    if gate_type == "reported":
        return ReportedReadinessGate()
    if gate_type == "simulated":
        return SimulatedReadinessGate(
            startup_seconds=config.get("startup_seconds", 120.0),
            pool_startup_seconds=config.get("pool_startup_seconds"),
            clock=clock,
        )
    raise ConfigInvalid("readiness", f"unsupported readiness gate type {gate_type!r}")
