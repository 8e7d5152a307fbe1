"""
In-process capacity backend that models provisioning lead time.
"""
import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from poolscale.autoscaling.errors import ProvisioningFailure
from poolscale.cloud.provider import CapacityBackend


class SimulatedCapacityBackend(CapacityBackend):
    """Capacity backend where a launched unit becomes ready after its lead time.

    Failures can be injected: ``fail_next(node_class, n)`` rejects the next
    ``n`` directives and ``stall(node_class)`` keeps launches from ever
    becoming ready.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, clock: Callable[[], float] = time.monotonic):
        """Initialize simulated backend.

        Args:
            config: Backend configuration with ``default_lead_time`` and
                per-class ``lead_times``.
            clock: Time source shared with the control loops.
        """
        super().__init__(config or {})
        self.clock = clock
        self.default_lead_time = self.config.get("default_lead_time", 300.0)
        self.lead_times: Dict[str, float] = dict(self.config.get("lead_times", {}))

        self.desired: Dict[str, int] = {}
        # node_class -> list of [external_id, launched_at]
        self.launches: Dict[str, List[list]] = {}
        self.failures_pending: Dict[str, int] = {}
        self.stalled: set = set()
        self.directives: List[tuple] = []
        self._ids = itertools.count(1)
        self.lock = threading.Lock()

    def fail_next(self, node_class: str, count: int = 1) -> None:
        with self.lock:
            self.failures_pending[node_class] = self.failures_pending.get(node_class, 0) + count

    def stall(self, node_class: str, stalled: bool = True) -> None:
        with self.lock:
            if stalled:
                self.stalled.add(node_class)
            else:
                self.stalled.discard(node_class)

    def _lead_time(self, node_class: str) -> float:
        return self.lead_times.get(node_class, self.default_lead_time)

    def _is_ready(self, node_class: str, launched_at: float, now: float) -> bool:
        return node_class not in self.stalled and now - launched_at >= self._lead_time(node_class)

    def set_desired_units(self, node_class: str, units: int) -> None:
        with self.lock:
            if self.failures_pending.get(node_class, 0) > 0:
                self.failures_pending[node_class] -= 1
                raise ProvisioningFailure(node_class, "simulated directive rejection")

            now = self.clock()
            launches = self.launches.setdefault(node_class, [])
            self.directives.append((node_class, units, now))

            while len(launches) < units:
                launches.append([f"{node_class}-i-{next(self._ids):05d}", now])

            # Scale-in removes units that are not ready yet before ready ones, newest first
            while len(launches) > units:
                not_ready = [launch for launch in launches if not self._is_ready(node_class, launch[1], now)]
                victim = not_ready[-1] if not_ready else launches[-1]
                launches.remove(victim)

            self.desired[node_class] = units

    def list_ready_units(self, node_class: str) -> List[str]:
        with self.lock:
            now = self.clock()
            return [
                external_id
                for external_id, launched_at in self.launches.get(node_class, [])
                if self._is_ready(node_class, launched_at, now)
            ]

    def terminate_unit(self, node_class: str, unit_id: str) -> None:
        with self.lock:
            launches = self.launches.get(node_class, [])
            for launch in launches:
                if launch[0] == unit_id:
                    launches.remove(launch)
                    self.desired[node_class] = max(0, self.desired.get(node_class, 0) - 1)
                    return
        raise ProvisioningFailure(node_class, f"unknown unit {unit_id}")

    def lose_unit(self, node_class: str, unit_id: str) -> None:
        """Drop a unit without a directive, as if the instance died."""
        with self.lock:
            launches = self.launches.get(node_class, [])
            self.launches[node_class] = [launch for launch in launches if launch[0] != unit_id]
