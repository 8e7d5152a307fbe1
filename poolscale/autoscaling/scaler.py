"""
Per-trigger replica vote computation.

A :class:`PoolScaler` turns one signal reading into a desired-replica vote for
one pool. Votes rise immediately and fall only once the trailing
stabilization window (and, for external triggers, the cooldown period) allows
it.
"""
import logging
import math
import threading
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple

from poolscale.autoscaling.signals import Signal, SignalKind, SignalReading

logger = logging.getLogger(__name__)


class PoolScaler:
    """Converts readings of one signal into replica votes for one pool."""

    def __init__(
        self,
        name: str,
        pool_name: str,
        signal: Signal,
        min_replicas: int,
        max_replicas: int,
        stabilization_window: float = 300.0,
        cooldown_period: Optional[float] = None,
        tolerance: float = 0.0,
    ):
        """Initialize a pool scaler.

        Args:
            name: Trigger name, unique within the pool.
            pool_name: Name of the pool this scaler votes for.
            signal: Signal observed by this trigger.
            min_replicas: Lower bound of this scaler's votes.
            max_replicas: Upper bound of this scaler's votes.
            stabilization_window: Seconds over which the highest raw value is held before decreasing.
            cooldown_period: Seconds the signal must stay below target before a decrease
                (external triggers only).
            tolerance: Relative deviation from target treated as "on target".
        """
        self.name = name
        self.pool_name = pool_name
        self.signal = signal
        self.min_replicas = min_replicas
        self.max_replicas = max_replicas
        self.stabilization_window = float(stabilization_window or 0.0)
        self.cooldown_period = float(cooldown_period) if cooldown_period else None
        self.tolerance = tolerance

        # (timestamp, raw) samples inside the stabilization window
        self.recommendations: Deque[Tuple[float, int]] = deque()
        self.below_threshold_since: Optional[float] = None
        self.last_vote: Optional[int] = None
        self.last_reading: Optional[SignalReading] = None

        self.lock = threading.Lock()
        self.logger = logging.getLogger(f"{__name__}.PoolScaler.{pool_name}.{name}")

    @property
    def uses_cooldown(self) -> bool:
        return self.signal.kind == SignalKind.EXTERNAL and self.cooldown_period is not None

    def compute_raw(self, value: float, current_replicas: int) -> int:
        """Compute the unstabilized vote ``ceil(c * v / t)`` clamped to this scaler's bounds.

        Args:
            value: Signal value.
            current_replicas: Observed replica count of the pool.

        Returns:
            Raw replica count.
        """
        target = self.signal.target
        ratio = value / target

        base = current_replicas
        if base == 0 and value > 0:
            # A scaled-to-zero pool is woken from a base of one replica
            base = 1

        if base > 0 and abs(ratio - 1.0) <= self.tolerance:
            raw = base
        else:
            # Round before ceil so float error in v/t cannot add a replica
            raw = int(math.ceil(round(base * ratio, 9)))

        return max(self.min_replicas, min(raw, self.max_replicas))

    def observe(self, reading: SignalReading, current_replicas: int) -> int:
        """Compute this scaler's vote for a new reading.

        Args:
            reading: Latest signal reading.
            current_replicas: Observed replica count of the pool.

        Returns:
            Stabilized vote.
        """
        with self.lock:
            now = reading.timestamp
            raw = self.compute_raw(reading.value, current_replicas)
            self.last_reading = reading

            vote = self._stabilize(raw, now)
            if self.uses_cooldown:
                vote = self._apply_cooldown(vote, reading.value, now)

            if vote != self.last_vote:
                self.logger.debug(
                    f"value={reading.value:.3f} target={self.signal.target:.3f} current={current_replicas} "
                    f"raw={raw} vote={vote}"
                )
            self.last_vote = vote
            return vote

    def _stabilize(self, raw: int, now: float) -> int:
        """Hold the highest raw value seen within the trailing window."""
        self.recommendations.append((now, raw))
        cutoff = now - self.stabilization_window
        while self.recommendations and self.recommendations[0][0] < cutoff:
            self.recommendations.popleft()

        # The newest sample is always kept even with a zero window
        return max(value for _, value in self.recommendations)

    def _apply_cooldown(self, vote: int, value: float, now: float) -> int:
        """Gate decreases on the signal staying below threshold for the full cooldown."""
        if value > self.signal.target:
            self.below_threshold_since = None
            # Above threshold only increases pass
            if self.last_vote is not None:
                return max(vote, self.last_vote)
            return vote

        if self.below_threshold_since is None:
            self.below_threshold_since = now

        if self.last_vote is None or vote >= self.last_vote:
            return vote

        elapsed = now - self.below_threshold_since
        if elapsed < self.cooldown_period:
            self.logger.debug(
                f"Holding vote {self.last_vote} during cooldown ({elapsed:.0f}s of {self.cooldown_period:.0f}s)"
            )
            return self.last_vote

        return vote

    def get_status(self) -> Dict[str, Any]:
        """Get a snapshot of this scaler's state."""
        with self.lock:
            return {
                "name": self.name,
                "pool": self.pool_name,
                "kind": self.signal.kind.value,
                "target": self.signal.target,
                "last_value": self.last_reading.value if self.last_reading else None,
                "last_vote": self.last_vote,
                "below_threshold_since": self.below_threshold_since,
                "bounds": [self.min_replicas, self.max_replicas],
            }
