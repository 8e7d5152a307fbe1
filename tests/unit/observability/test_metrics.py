"""
Tests for autoscaler Prometheus metrics.
"""
from unittest.mock import patch

from prometheus_client import CollectorRegistry

from poolscale.observability.metrics import AutoscalerMetrics


def test_scaling_event_sets_desired_and_counts_direction(metrics):
    metrics.record_scaling_event("vllm", 1, 3)
    metrics.record_scaling_event("vllm", 3, 2)
    metrics.record_scaling_event("vllm", 2, 4)

    assert metrics.get_sample("poolscale_pool_desired_replicas", {"pool": "vllm"}) == 4
    assert metrics.get_sample("poolscale_pool_scaling_events_total", {"pool": "vllm", "direction": "up"}) == 2
    assert metrics.get_sample("poolscale_pool_scaling_events_total", {"pool": "vllm", "direction": "down"}) == 1


def test_vote_and_unavailable_signal(metrics):
    metrics.record_vote("vllm", "queue-depth", 12.0, 3)
    metrics.record_signal_unavailable("vllm", "queue-depth")

    labels = {"pool": "vllm", "trigger": "queue-depth"}
    assert metrics.get_sample("poolscale_trigger_signal_value", labels) == 12.0
    assert metrics.get_sample("poolscale_trigger_vote", labels) == 3
    assert metrics.get_sample("poolscale_trigger_signal_unavailable_total", labels) == 1


def test_pool_and_node_class_status(metrics):
    metrics.update_pool(
        "vllm", {"desired_replicas": 3, "current_replicas": 2, "ready_replicas": 1, "pending_replicas": 1}
    )
    metrics.update_node_class(
        "gpu-a10g",
        {
            "current_units": 2,
            "requested_units": 0,
            "provisioning_units": 1,
            "allocated_slots": 2,
            "degraded": True,
        },
    )

    assert metrics.get_sample("poolscale_pool_pending_replicas", {"pool": "vllm"}) == 1
    assert metrics.get_sample("poolscale_node_class_units", {"node_class": "gpu-a10g", "state": "Provisioning"}) == 1
    assert metrics.get_sample("poolscale_node_class_degraded", {"node_class": "gpu-a10g"}) == 1


def test_unknown_sample_is_none(metrics):
    assert metrics.get_sample("poolscale_pool_desired_replicas", {"pool": "missing"}) is None


def test_instances_use_private_registries():
    first = AutoscalerMetrics({"enabled": False})
    second = AutoscalerMetrics({"enabled": False})

    first.record_signal_unavailable("vllm", "queue-depth")

    labels = {"pool": "vllm", "trigger": "queue-depth"}
    assert first.get_sample("poolscale_trigger_signal_unavailable_total", labels) == 1
    assert second.get_sample("poolscale_trigger_signal_unavailable_total", labels) is None


@patch("poolscale.observability.metrics.start_http_server")
def test_start_server_once(mock_start):
    registry = CollectorRegistry()
    metrics = AutoscalerMetrics({"enabled": True, "port": 9500}, registry=registry)

    metrics.start_server()
    metrics.start_server()

    mock_start.assert_called_once_with(9500, registry=registry)


@patch("poolscale.observability.metrics.start_http_server")
def test_disabled_metrics_not_served(mock_start, metrics):
    metrics.start_server()

    mock_start.assert_not_called()
