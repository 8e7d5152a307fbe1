"""
Capacity backend factory.
"""
import logging
import time
from typing import Any, Callable, Dict

from poolscale.autoscaling.errors import ConfigInvalid
from poolscale.cloud.aws_provider import EKSNodeGroupBackend
from poolscale.cloud.provider import CapacityBackend
from poolscale.cloud.simulated import SimulatedCapacityBackend

logger = logging.getLogger(__name__)


class CapacityBackendFactory:
    """Factory for creating capacity backends."""

    @staticmethod
    def create_backend(config: Dict[str, Any], clock: Callable[[], float] = time.monotonic) -> CapacityBackend:
        """Create the capacity backend described by ``config``.

        Args:
            config: ``capacity_backend`` configuration block.
            clock: Time source for simulated backends.

        Returns:
            Capacity backend instance.

        Raises:
            ConfigInvalid: If the backend type is unknown.
        """
        backend_type = config.get("type", "simulated")

        if backend_type == "simulated":
            backend = SimulatedCapacityBackend(config, clock=clock)
        elif backend_type == "eks":
            if not config.get("cluster_name"):
                raise ConfigInvalid("capacity_backend", "eks backend requires 'cluster_name'")
            backend = EKSNodeGroupBackend(config)
        else:
            raise ConfigInvalid("capacity_backend", f"unsupported backend type {backend_type!r}")

        logger.info(f"Created capacity backend: {backend}")
        return backend
