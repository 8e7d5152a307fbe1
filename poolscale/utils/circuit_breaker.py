"""
Circuit breaker and backoff helpers for calls to external collaborators.

The control loops never sleep inside a retry: callers ask the breaker whether
a call is allowed now and use :func:`compute_backoff` to schedule the next
attempt on a later tick.
"""
import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation, calls are allowed
    OPEN = "OPEN"  # Too many failures, calls are rejected
    HALF_OPEN = "HALF_OPEN"  # Recovery probe, limited calls are allowed


class CircuitBreaker:
    """Counts consecutive failures of an external call and opens after a threshold."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max_calls: int = 1,
        name: str = "default",
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize circuit breaker.

        Args:
            failure_threshold: Number of consecutive failures before opening the circuit.
            recovery_timeout: Seconds to wait in OPEN before allowing a probe call.
            half_open_max_calls: Successful probe calls needed to close the circuit again.
            name: Name of this circuit breaker.
            clock: Monotonic time source, defaults to ``time.monotonic``.
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.name = name
        self.clock = clock or time.monotonic

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.half_open_calls = 0

        self.lock = threading.RLock()
        self.logger = logging.getLogger(f"{__name__}.CircuitBreaker.{name}")

    def get_state(self) -> CircuitState:
        """Get current circuit state with recovery check.

        Returns:
            Current circuit state.
        """
        with self.lock:
            if self.state == CircuitState.OPEN and self._recovery_timeout_elapsed():
                self._transition_to_half_open()
            return self.state

    def is_open(self) -> bool:
        """Check whether calls are currently rejected."""
        return self.get_state() == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Check whether a call may be made now."""
        return self.get_state() != CircuitState.OPEN

    def record_success(self) -> None:
        """Record a successful call."""
        with self.lock:
            if self.state == CircuitState.HALF_OPEN:
                self.half_open_calls += 1
                if self.half_open_calls >= self.half_open_max_calls:
                    self._transition_to_closed()
            elif self.state == CircuitState.CLOSED:
                self.failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        with self.lock:
            self.last_failure_time = self.clock()

            if self.state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self.state == CircuitState.CLOSED:
                self.failure_count += 1
                if self.failure_count >= self.failure_threshold:
                    self._transition_to_open()

    def reset(self) -> None:
        """Force the circuit closed."""
        with self.lock:
            self._transition_to_closed()

    def _transition_to_open(self) -> None:
        old_state = self.state
        self.state = CircuitState.OPEN
        self.logger.warning(f"Circuit {self.name} transitioned from {old_state.value} to {self.state.value}")

    def _transition_to_half_open(self) -> None:
        old_state = self.state
        self.state = CircuitState.HALF_OPEN
        self.half_open_calls = 0
        self.logger.info(f"Circuit {self.name} transitioned from {old_state.value} to {self.state.value}")

    def _transition_to_closed(self) -> None:
        old_state = self.state
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_calls = 0
        if old_state != CircuitState.CLOSED:
            self.logger.info(f"Circuit {self.name} transitioned from {old_state.value} to {self.state.value}")

    def _recovery_timeout_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self.clock() - self.last_failure_time >= self.recovery_timeout

    def get_status(self) -> Dict[str, Any]:
        """Get a snapshot of the breaker.

        Returns:
            Dictionary with state, failure count and last failure time.
        """
        with self.lock:
            return {
                "state": self.get_state().value,
                "failure_count": self.failure_count,
                "last_failure_time": self.last_failure_time,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
            }


def compute_backoff(
    attempt: int,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: Optional[float] = None,
    jitter: bool = False,
) -> float:
    """Compute the delay before retry number ``attempt``.

    Args:
        attempt: Zero-based retry number.
        base_delay: Base delay time in seconds.
        backoff_factor: Backoff factor for delay calculation.
        max_delay: Upper bound on the delay, if any.
        jitter: Whether to add up to 10% random jitter to prevent synchronized retries.

    Returns:
        Delay in seconds.
    """
    delay = base_delay * (backoff_factor ** max(0, attempt))
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, 0.1 * delay)
    return delay
