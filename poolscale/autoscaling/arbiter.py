"""
Pool state and the single-writer arbiter for its desired replica count.

Several triggers may target one pool. Each submits a vote; the arbiter keeps
the latest vote per trigger and sets ``desired = max(votes)`` clamped to the
pool bounds. Any trigger can force scale-out, while scale-in needs every vote
to have decayed.
"""
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DirectiveListener = Callable[[str, int, int], None]


class Pool:
    """A set of interchangeable replicas scaled as a unit."""

    def __init__(
        self,
        name: str,
        min_replicas: int,
        max_replicas: int,
        node_class: Optional[str] = None,
        history_window: float = 600.0,
        max_history: int = 1000,
    ):
        """Initialize a pool.

        Args:
            name: Pool name.
            min_replicas: Minimum desired replicas.
            max_replicas: Maximum desired replicas.
            node_class: Node class supplying the pool's scarce resource, or None for
                pools that need no dedicated capacity.
            history_window: Seconds of desired-count history to retain.
            max_history: Maximum number of history samples to retain.
        """
        self.name = name
        self.min_replicas = min_replicas
        self.max_replicas = max_replicas
        self.node_class = node_class
        self.history_window = history_window

        # Written only by ScalerArbiter
        self.desired_replicas = min_replicas
        # Written only by ReplicaController
        self.current_replicas = 0
        self.history: Deque[Tuple[float, int]] = deque(maxlen=max_history)

    def clamp(self, replicas: int) -> int:
        return max(self.min_replicas, min(replicas, self.max_replicas))

    def record_desired(self, timestamp: float, desired: int) -> None:
        self.history.append((timestamp, desired))
        cutoff = timestamp - self.history_window
        while self.history and self.history[0][0] < cutoff:
            self.history.popleft()

    def snapshot(self) -> Dict[str, Any]:
        """Get a read-only view of the pool.

        Returns:
            Dictionary with bounds, counts and history.
        """
        return {
            "name": self.name,
            "min_replicas": self.min_replicas,
            "max_replicas": self.max_replicas,
            "node_class": self.node_class,
            "desired_replicas": self.desired_replicas,
            "current_replicas": self.current_replicas,
            "history": list(self.history),
        }


class ScalerArbiter:
    """Authoritative writer of one pool's desired replica count."""

    def __init__(self, pool: Pool, clock: Callable[[], float] = time.monotonic):
        """Initialize the arbiter.

        Args:
            pool: Pool whose desired count this arbiter owns.
            clock: Time source used for history samples.
        """
        self.pool = pool
        self.clock = clock
        self.votes: Dict[str, int] = {}
        self.listeners: List[DirectiveListener] = []
        self.lock = threading.RLock()
        self.logger = logging.getLogger(f"{__name__}.ScalerArbiter.{pool.name}")

    @property
    def desired_replicas(self) -> int:
        return self.pool.desired_replicas

    def add_listener(self, listener: DirectiveListener) -> None:
        """Register a callback invoked as ``listener(pool, old, new)`` on every change."""
        self.listeners.append(listener)

    def submit_vote(self, scaler_name: str, vote: int) -> int:
        """Record the latest vote of a scaler and recompute the desired count.

        Args:
            scaler_name: Name of the voting scaler.
            vote: Desired replica count proposed by the scaler.

        Returns:
            Desired replica count after recomputation.
        """
        with self.lock:
            self.votes[scaler_name] = int(vote)
            return self._recompute(reason=f"vote {scaler_name}={vote}")

    def withdraw_vote(self, scaler_name: str) -> int:
        """Remove a scaler's vote, e.g. when its trigger is deregistered."""
        with self.lock:
            if self.votes.pop(scaler_name, None) is None:
                return self.pool.desired_replicas
            return self._recompute(reason=f"withdrew {scaler_name}")

    def get_votes(self) -> Dict[str, int]:
        with self.lock:
            return dict(self.votes)

    def _recompute(self, reason: str) -> int:
        now = self.clock()
        old = self.pool.desired_replicas

        if self.votes:
            new = self.pool.clamp(max(self.votes.values()))
        else:
            # No votes: hold the last computed value
            new = old

        self.pool.record_desired(now, new)
        if new == old:
            return new

        self.pool.desired_replicas = new
        direction = "up" if new > old else "down"
        self.logger.info(f"Scaling pool {self.pool.name} {direction} from {old} to {new} ({reason})")

        for listener in self.listeners:
            try:
                listener(self.pool.name, old, new)
            except Exception as e:
                self.logger.error(f"Directive listener failed for pool {self.pool.name}: {e}")

        return new
