"""
Capacity backend interface for node-class provisioning.

A backend is the external node provisioner: it accepts "node class C desires U
units" directives and reports which units are ready. It does not know about
replicas.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List
import logging

logger = logging.getLogger(__name__)


class CapacityBackend(ABC):
    """Abstract base class for capacity backends."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize capacity backend.

        Args:
            config: Backend configuration.
        """
        self.config = config
        self.name = self.__class__.__name__
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    @abstractmethod
    def set_desired_units(self, node_class: str, units: int) -> None:
        """Set the desired number of units for a node class.

        Args:
            node_class: Node class name.
            units: Desired unit count.

        Raises:
            ProvisioningFailure: If the directive was not accepted.
        """
        pass

    @abstractmethod
    def list_ready_units(self, node_class: str) -> List[str]:
        """List the external ids of units that are ready to host replicas.

        Args:
            node_class: Node class name.

        Returns:
            External unit ids (e.g. instance ids).

        Raises:
            ProvisioningFailure: If the backend cannot be observed.
        """
        pass

    @abstractmethod
    def terminate_unit(self, node_class: str, unit_id: str) -> None:
        """Terminate one specific unit and decrement the desired count.

        Args:
            node_class: Node class name.
            unit_id: External id of the unit.

        Raises:
            ProvisioningFailure: If the unit could not be terminated.
        """
        pass

    def __str__(self) -> str:
        return f"{self.name}"
