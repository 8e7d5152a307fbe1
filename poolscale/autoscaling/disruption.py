"""
Disruption guard enforcing per-pool minimum availability.

Every voluntary removal, whether from scale-down, node drain or a rolling
replacement, is gated here. A refusal is backpressure: the caller retries on a
later tick.
"""
import logging
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DisruptionGuard:
    """Gate consulted before any replica is removed."""

    def __init__(self, metrics=None):
        """Initialize the guard.

        Args:
            metrics: Optional AutoscalerMetrics used to count decisions.
        """
        self.budgets: Dict[str, int] = {}
        self.controllers: Dict[str, Any] = {}
        self.metrics = metrics
        self.decisions: Dict[str, Dict[str, int]] = {}
        self.lock = threading.Lock()
        self.logger = logging.getLogger(f"{__name__}.DisruptionGuard")

    def set_budget(self, pool: str, min_available: int) -> None:
        """Set the minimum number of Ready replicas for a pool."""
        if min_available < 0:
            raise ValueError(f"min_available must be >= 0, got {min_available}")
        with self.lock:
            self.budgets[pool] = min_available

    def min_available(self, pool: str) -> int:
        with self.lock:
            return self.budgets.get(pool, 0)

    def register_pool(self, pool: str, controller) -> None:
        """Register the replica controller that owns a pool's replicas.

        Args:
            pool: Pool name.
            controller: Object exposing ``count_ready()``, ``has_replica(id)`` and
                ``remove_replica(id, reason)``.
        """
        with self.lock:
            self.controllers[pool] = controller
            self.budgets.setdefault(pool, 0)

    def may_remove(self, pool: str, replica_id: str) -> bool:
        """Check whether removing a replica keeps the pool within its budget.

        Args:
            pool: Pool name.
            replica_id: Replica to remove.

        Returns:
            True only if ``count_ready(pool) - 1 >= min_available(pool)``.
        """
        controller = self.controllers.get(pool)
        if controller is None or not controller.has_replica(replica_id):
            return False
        return controller.count_ready() - 1 >= self.min_available(pool)

    def request_removal(self, pool: str, replica_id: str, reason: str = "eviction") -> bool:
        """Removal-request hook for external drain or eviction mechanisms.

        The check and the transition to Terminating happen atomically in the
        owning controller.

        Returns:
            True if the replica is now terminating, False if blocked.
        """
        controller = self.controllers.get(pool)
        if controller is None:
            self.logger.warning(f"Removal of {replica_id} requested for unknown pool {pool}")
            return False
        return controller.remove_replica(replica_id, reason=reason)

    def record_decision(self, pool: str, replica_id: str, reason: str, allowed: bool) -> None:
        """Record the outcome of a removal attempt."""
        outcome = "allowed" if allowed else "blocked"
        with self.lock:
            counts = self.decisions.setdefault(pool, {"allowed": 0, "blocked": 0})
            counts[outcome] += 1

        if allowed:
            self.logger.info(f"Removal of {pool}/{replica_id} allowed ({reason})")
        else:
            self.logger.debug(
                f"Removal of {pool}/{replica_id} blocked ({reason}): "
                f"min_available={self.min_available(pool)}"
            )

        if self.metrics is not None:
            self.metrics.record_removal(pool, reason, allowed)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """Get budgets, ready counts and decision counters per pool."""
        status = {}
        for pool, controller in list(self.controllers.items()):
            with self.lock:
                counts = dict(self.decisions.get(pool, {"allowed": 0, "blocked": 0}))
                budget = self.budgets.get(pool, 0)
            status[pool] = {"min_available": budget, "ready": controller.count_ready(), **counts}
        return status
