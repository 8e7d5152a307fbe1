"""
EKS managed node group backend for capacity units.

Each node class maps to one managed node group. A unit is one EC2 instance in
the node group's Auto Scaling group.
"""
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from poolscale.autoscaling.errors import ProvisioningFailure
from poolscale.cloud.provider import CapacityBackend


class EKSNodeGroupBackend(CapacityBackend):
    """Capacity backend driving EKS managed node groups."""

    def __init__(self, config: Dict[str, Any]):
        """Initialize EKS backend.

        Args:
            config: Backend configuration with ``region``, ``cluster_name`` and a
                ``node_groups`` mapping of node class to node group name.
        """
        super().__init__(config)
        self.region = config.get("region", "us-west-2")
        self.cluster_name = config.get("cluster_name")
        self.node_groups: Dict[str, str] = dict(config.get("node_groups", {}))

        self.eks_client = self._get_client("eks")
        self.autoscaling_client = self._get_client("autoscaling")

    def _get_client(self, service_name: str):
        """Get an AWS client for the specified service.

        Args:
            service_name: AWS service name.

        Returns:
            AWS client.
        """
        session = boto3.session.Session(region_name=self.region)
        return session.client(service_name)

    def _node_group(self, node_class: str) -> str:
        try:
            return self.node_groups[node_class]
        except KeyError:
            raise ProvisioningFailure(node_class, "no node group mapped to this node class")

    def _describe_node_group(self, node_class: str) -> Dict[str, Any]:
        try:
            return self.eks_client.describe_nodegroup(
                clusterName=self.cluster_name, nodegroupName=self._node_group(node_class)
            ).get("nodegroup", {})
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningFailure(node_class, str(e)) from e

    def _asg_names(self, node_class: str) -> List[str]:
        nodegroup = self._describe_node_group(node_class)
        groups = nodegroup.get("resources", {}).get("autoScalingGroups", [])
        return [group["name"] for group in groups if "name" in group]

    def set_desired_units(self, node_class: str, units: int) -> None:
        nodegroup = self._describe_node_group(node_class)
        scaling_config = nodegroup.get("scalingConfig", {})
        min_size = scaling_config.get("minSize", 0)
        max_size = scaling_config.get("maxSize", units)

        if units < min_size or units > max_size:
            raise ProvisioningFailure(
                node_class, f"desired {units} outside node group bounds [{min_size}, {max_size}]"
            )

        try:
            self.eks_client.update_nodegroup_config(
                clusterName=self.cluster_name,
                nodegroupName=self._node_group(node_class),
                scalingConfig={"desiredSize": units},
            )
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningFailure(node_class, str(e)) from e

        self.logger.info(f"Set node group {self._node_group(node_class)} desired size to {units}")

    def list_ready_units(self, node_class: str) -> List[str]:
        asg_names = self._asg_names(node_class)
        if not asg_names:
            return []

        try:
            response = self.autoscaling_client.describe_auto_scaling_groups(AutoScalingGroupNames=asg_names)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningFailure(node_class, str(e)) from e

        ready = []
        for group in response.get("AutoScalingGroups", []):
            for instance in group.get("Instances", []):
                if instance.get("LifecycleState") == "InService" and instance.get("HealthStatus") == "Healthy":
                    ready.append(instance["InstanceId"])
        return sorted(ready)

    def terminate_unit(self, node_class: str, unit_id: str) -> None:
        try:
            self.autoscaling_client.terminate_instance_in_auto_scaling_group(
                InstanceId=unit_id, ShouldDecrementDesiredCapacity=True
            )
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningFailure(node_class, str(e)) from e

        self.logger.info(f"Terminated instance {unit_id} of node class {node_class}")
