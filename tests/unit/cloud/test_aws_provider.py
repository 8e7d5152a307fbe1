"""
Tests for the EKS node group capacity backend.
"""
import pytest
from unittest.mock import patch, MagicMock

from botocore.exceptions import ClientError

from poolscale.autoscaling.errors import ProvisioningFailure
from poolscale.cloud.aws_provider import EKSNodeGroupBackend


@pytest.fixture
def backend():
    """EKS backend with mocked AWS clients."""
    with patch("poolscale.cloud.aws_provider.boto3"):
        backend = EKSNodeGroupBackend(
            {
                "region": "us-east-1",
                "cluster_name": "inference",
                "node_groups": {"gpu-a10g": "gpu-a10g-ng"},
            }
        )

    backend.eks_client = MagicMock()
    backend.autoscaling_client = MagicMock()
    backend.eks_client.describe_nodegroup.return_value = {
        "nodegroup": {
            "scalingConfig": {"minSize": 0, "maxSize": 4, "desiredSize": 1},
            "resources": {"autoScalingGroups": [{"name": "eks-gpu-a10g-ng-asg"}]},
        }
    }
    return backend


def test_eks_backend_init():
    """Test EKSNodeGroupBackend initialization."""
    with patch("poolscale.cloud.aws_provider.boto3") as mock_boto3:
        backend = EKSNodeGroupBackend({"region": "us-east-1", "cluster_name": "inference"})

    assert backend.region == "us-east-1"
    assert backend.name == "EKSNodeGroupBackend"
    mock_boto3.session.Session.assert_called_with(region_name="us-east-1")


def test_set_desired_units(backend):
    backend.set_desired_units("gpu-a10g", 3)

    backend.eks_client.update_nodegroup_config.assert_called_once_with(
        clusterName="inference", nodegroupName="gpu-a10g-ng", scalingConfig={"desiredSize": 3}
    )


def test_set_desired_units_outside_node_group_bounds(backend):
    with pytest.raises(ProvisioningFailure, match="outside node group bounds"):
        backend.set_desired_units("gpu-a10g", 5)

    backend.eks_client.update_nodegroup_config.assert_not_called()


def test_unmapped_node_class(backend):
    with pytest.raises(ProvisioningFailure, match="no node group mapped"):
        backend.set_desired_units("gpu-h100", 1)


def test_client_error_becomes_provisioning_failure(backend):
    backend.eks_client.update_nodegroup_config.side_effect = ClientError(
        {"Error": {"Code": "ResourceInUseException", "Message": "update in progress"}}, "UpdateNodegroupConfig"
    )

    with pytest.raises(ProvisioningFailure) as excinfo:
        backend.set_desired_units("gpu-a10g", 2)

    assert excinfo.value.node_class == "gpu-a10g"
    assert "update in progress" in excinfo.value.reason


def test_list_ready_units(backend):
    backend.autoscaling_client.describe_auto_scaling_groups.return_value = {
        "AutoScalingGroups": [
            {
                "Instances": [
                    {"InstanceId": "i-0bbb", "LifecycleState": "InService", "HealthStatus": "Healthy"},
                    {"InstanceId": "i-0aaa", "LifecycleState": "InService", "HealthStatus": "Healthy"},
                    {"InstanceId": "i-0ccc", "LifecycleState": "Pending", "HealthStatus": "Healthy"},
                    {"InstanceId": "i-0ddd", "LifecycleState": "InService", "HealthStatus": "Unhealthy"},
                ]
            }
        ]
    }

    assert backend.list_ready_units("gpu-a10g") == ["i-0aaa", "i-0bbb"]
    backend.autoscaling_client.describe_auto_scaling_groups.assert_called_once_with(
        AutoScalingGroupNames=["eks-gpu-a10g-ng-asg"]
    )


def test_list_ready_units_without_asg(backend):
    backend.eks_client.describe_nodegroup.return_value = {"nodegroup": {"resources": {}}}

    assert backend.list_ready_units("gpu-a10g") == []
    backend.autoscaling_client.describe_auto_scaling_groups.assert_not_called()


def test_terminate_unit(backend):
    backend.terminate_unit("gpu-a10g", "i-0aaa")

    backend.autoscaling_client.terminate_instance_in_auto_scaling_group.assert_called_once_with(
        InstanceId="i-0aaa", ShouldDecrementDesiredCapacity=True
    )
