"""
Replica directive sinks.

The arbiter's desired replica count for a pool is handed to a ScaleTarget,
which forwards it to whatever actually runs the replicas.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from poolscale.autoscaling.errors import ConfigInvalid

logger = logging.getLogger(__name__)


class ScaleTarget(ABC):
    """Receives desired replica counts per pool."""

    @abstractmethod
    def set_desired_replicas(self, pool: str, replicas: int) -> None:
        """Apply a desired replica count.

        Args:
            pool: Pool name.
            replicas: Desired replica count.
        """
        pass


class LoggingScaleTarget(ScaleTarget):
    """Scale target that only records directives. Used for dry runs and tests."""

    def __init__(self):
        self.directives: List[Tuple[str, int]] = []
        self.logger = logging.getLogger(f"{__name__}.LoggingScaleTarget")

    def set_desired_replicas(self, pool: str, replicas: int) -> None:
        self.directives.append((pool, replicas))
        self.logger.info(f"Desired replicas for pool {pool}: {replicas}")

    def last(self, pool: str) -> Optional[int]:
        for name, replicas in reversed(self.directives):
            if name == pool:
                return replicas
        return None


class KubernetesScaleTarget(ScaleTarget):
    """Scale target that patches the scale subresource of a Deployment per pool."""

    def __init__(self, config: Dict[str, Any], api=None):
        """Initialize Kubernetes scale target.

        Args:
            config: ``scale_target`` configuration with ``namespace``, a
                ``deployments`` mapping of pool to Deployment name and optional
                ``kubeconfig`` / ``context``.
            api: Pre-built ``AppsV1Api``. Built from the environment if None.
        """
        self.namespace = config.get("namespace", "default")
        self.deployments: Dict[str, str] = dict(config.get("deployments", {}))
        self.kubeconfig = config.get("kubeconfig")
        self.context = config.get("context")
        self.logger = logging.getLogger(f"{__name__}.KubernetesScaleTarget")
        self._api = api

    def _get_api(self):
        """Get the AppsV1 API client, loading in-cluster config when available.

        Returns:
            Kubernetes AppsV1Api client.
        """
        if self._api is not None:
            return self._api

        from kubernetes import client, config

        if self.kubeconfig or self.context:
            config.load_kube_config(config_file=self.kubeconfig, context=self.context)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()

        self._api = client.AppsV1Api()
        return self._api

    def deployment_for(self, pool: str) -> str:
        return self.deployments.get(pool, pool)

    def set_desired_replicas(self, pool: str, replicas: int) -> None:
        from kubernetes.client.rest import ApiException

        name = self.deployment_for(pool)
        body = {"spec": {"replicas": replicas}}
        try:
            self._get_api().patch_namespaced_deployment_scale(name, self.namespace, body)
        except ApiException as e:
            self.logger.error(f"Failed to scale deployment {self.namespace}/{name} to {replicas}: {e.reason}")
            raise

        self.logger.info(f"Scaled deployment {self.namespace}/{name} to {replicas} replicas")


def create_scale_target(config: Optional[Dict[str, Any]] = None) -> ScaleTarget:
    """Create the scale target described by the ``scale_target`` config block.

    Raises:
        ConfigInvalid: If the target type is unknown.
    """
    config = config or {}
    target_type = config.get("type", "logging")

    if target_type == "logging":
        return LoggingScaleTarget()
    if target_type == "kubernetes":
        return KubernetesScaleTarget(config)
    raise ConfigInvalid("scale_target", f"unsupported scale target type {target_type!r}")
