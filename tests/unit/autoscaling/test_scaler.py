"""
Tests for per-trigger vote computation.
"""
import pytest

from poolscale.autoscaling.scaler import PoolScaler
from poolscale.autoscaling.signals import Signal, SignalKind, SignalReading


def utilization_scaler(target=70, min_replicas=1, max_replicas=20, window=300.0, tolerance=0.0):
    signal = Signal("gpu-utilization", SignalKind.UTILIZATION, target)
    return PoolScaler(
        "gpu-utilization", "vllm", signal, min_replicas, max_replicas, stabilization_window=window, tolerance=tolerance
    )


def queue_scaler(threshold=5, cooldown=300.0, max_replicas=20):
    signal = Signal("queue-depth", SignalKind.EXTERNAL, threshold)
    return PoolScaler(
        "queue-depth", "vllm", signal, 1, max_replicas, stabilization_window=0, cooldown_period=cooldown
    )


def reading(value, timestamp, name="signal"):
    return SignalReading(name, value, timestamp)


def test_scale_up_from_utilization():
    """4 replicas at 90% against a 70% target vote for 6."""
    scaler = utilization_scaler()

    assert scaler.observe(reading(90, 0), current_replicas=4) == 6


def test_raw_vote_is_clamped_to_scaler_bounds():
    scaler = utilization_scaler(min_replicas=2, max_replicas=5)

    assert scaler.compute_raw(500, current_replicas=4) == 5
    assert scaler.compute_raw(1, current_replicas=4) == 2


def test_exact_ratio_does_not_round_up():
    scaler = utilization_scaler(target=70)

    # 3 * 70 / 70 must stay 3 even with float error
    assert scaler.compute_raw(70.0, current_replicas=3) == 3
    assert scaler.compute_raw(0.7 * 100, current_replicas=10) == 10


def test_tolerance_keeps_current_count():
    scaler = utilization_scaler(tolerance=0.1)

    assert scaler.compute_raw(75, current_replicas=4) == 4
    assert scaler.compute_raw(90, current_replicas=4) == 6


def test_scale_from_zero_uses_one_replica_base():
    scaler = queue_scaler(threshold=5)
    scaler.min_replicas = 0

    assert scaler.compute_raw(12, current_replicas=0) == 3
    assert scaler.compute_raw(0, current_replicas=0) == 0


def test_stabilization_window_holds_highest_vote():
    scaler = utilization_scaler(window=300)

    assert scaler.observe(reading(90, 0), 4) == 6
    # Load drops, raw falls to 2, but the window still holds 6
    assert scaler.observe(reading(35, 60), 4) == 6
    assert scaler.observe(reading(35, 300), 4) == 6
    # The t=0 sample leaves the window
    assert scaler.observe(reading(35, 301), 4) == 2


def test_increase_applies_immediately_inside_window():
    scaler = utilization_scaler(window=300)

    assert scaler.observe(reading(70, 0), 4) == 4
    assert scaler.observe(reading(140, 15), 4) == 8


def test_queue_cooldown_scenario():
    """Queue depth 8 over threshold 5 scales up; decrease waits for 300s below threshold."""
    scaler = queue_scaler(threshold=5, cooldown=300)

    assert scaler.observe(reading(8, -15), 2) == 4

    # Pool is now at 4 replicas and the queue drains to 2
    assert scaler.observe(reading(2, 0), 4) == 4
    assert scaler.observe(reading(2, 150), 4) == 4
    assert scaler.observe(reading(2, 299), 4) == 4
    assert scaler.observe(reading(2, 300), 4) == 2


def test_reading_above_threshold_resets_cooldown():
    scaler = queue_scaler(threshold=5, cooldown=300)

    scaler.observe(reading(8, 0), 2)
    scaler.observe(reading(2, 15), 4)
    assert scaler.below_threshold_since == 15

    # A single reading above threshold restarts the clock
    scaler.observe(reading(6, 200), 4)
    assert scaler.below_threshold_since is None

    assert scaler.observe(reading(2, 210), 5) == 5
    assert scaler.observe(reading(2, 509), 5) == 5
    assert scaler.observe(reading(2, 510), 5) == 2


def test_vote_not_lowered_while_above_threshold():
    """A smaller queue that is still above threshold cannot lower the vote."""
    scaler = queue_scaler(threshold=5, cooldown=300)

    assert scaler.observe(reading(20, 0), 2) == 8
    assert scaler.observe(reading(6, 15), 2) == 8
    assert scaler.below_threshold_since is None

    # The cooldown only starts once the queue drops to the threshold
    assert scaler.observe(reading(2, 30), 2) == 8
    assert scaler.observe(reading(2, 329), 2) == 8
    assert scaler.observe(reading(2, 330), 2) == 1

    # Increases above threshold still pass immediately
    assert scaler.observe(reading(30, 345), 1) == 6


def test_reading_at_threshold_counts_as_below():
    scaler = queue_scaler(threshold=5, cooldown=300)

    scaler.observe(reading(10, 0), 2)
    scaler.observe(reading(5, 10), 4)

    assert scaler.below_threshold_since == 10


def test_repeated_readings_are_idempotent():
    scaler = utilization_scaler()

    votes = [scaler.observe(reading(90, t), 4) for t in range(0, 150, 15)]

    assert set(votes) == {6}


@pytest.mark.parametrize(
    "value,current,expected",
    [
        (90, 4, 6),
        (70, 4, 4),
        (35, 4, 2),
        (0, 4, 1),
    ],
)
def test_compute_raw_values(value, current, expected):
    scaler = utilization_scaler()

    assert scaler.compute_raw(value, current) == expected


def test_get_status_reports_last_vote():
    scaler = queue_scaler()
    scaler.observe(reading(8, 0), 2)

    status = scaler.get_status()

    assert status["kind"] == "external"
    assert status["last_value"] == 8
    assert status["last_vote"] == 4
    assert status["bounds"] == [1, 20]
