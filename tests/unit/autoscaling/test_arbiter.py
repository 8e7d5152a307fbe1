"""
Tests for the per-pool scaler arbiter.
"""
import random
import threading

import pytest

from poolscale.autoscaling.arbiter import Pool, ScalerArbiter


@pytest.fixture
def pool():
    return Pool("vllm", min_replicas=1, max_replicas=20)


@pytest.fixture
def arbiter(pool, clock):
    return ScalerArbiter(pool, clock=clock)


def test_desired_is_max_of_votes(arbiter):
    arbiter.submit_vote("gpu-utilization", 3)
    arbiter.submit_vote("queue-depth", 7)

    assert arbiter.desired_replicas == 7


def test_single_scaler_increase_wins(arbiter):
    arbiter.submit_vote("gpu-utilization", 3)
    arbiter.submit_vote("queue-depth", 2)
    assert arbiter.desired_replicas == 3

    arbiter.submit_vote("queue-depth", 9)
    assert arbiter.desired_replicas == 9


def test_scale_in_requires_every_vote_to_drop(arbiter):
    arbiter.submit_vote("gpu-utilization", 6)
    arbiter.submit_vote("queue-depth", 6)

    arbiter.submit_vote("gpu-utilization", 2)
    assert arbiter.desired_replicas == 6

    arbiter.submit_vote("queue-depth", 2)
    assert arbiter.desired_replicas == 2


def test_desired_clamped_to_pool_bounds(arbiter):
    arbiter.submit_vote("queue-depth", 50)
    assert arbiter.desired_replicas == 20

    arbiter.submit_vote("queue-depth", 0)
    assert arbiter.desired_replicas == 1


def test_latest_vote_per_scaler_replaces_previous(arbiter):
    arbiter.submit_vote("queue-depth", 8)
    arbiter.submit_vote("queue-depth", 4)

    assert arbiter.get_votes() == {"queue-depth": 4}
    assert arbiter.desired_replicas == 4


def test_withdraw_vote_recomputes(arbiter):
    arbiter.submit_vote("gpu-utilization", 3)
    arbiter.submit_vote("queue-depth", 8)

    assert arbiter.withdraw_vote("queue-depth") == 3
    assert arbiter.get_votes() == {"gpu-utilization": 3}


def test_no_votes_holds_previous_value(arbiter):
    arbiter.submit_vote("queue-depth", 5)
    arbiter.withdraw_vote("queue-depth")

    assert arbiter.desired_replicas == 5


def test_listeners_notified_only_on_change(arbiter):
    changes = []
    arbiter.add_listener(lambda name, old, new: changes.append((name, old, new)))

    arbiter.submit_vote("queue-depth", 6)
    arbiter.submit_vote("queue-depth", 6)
    arbiter.submit_vote("gpu-utilization", 4)

    assert changes == [("vllm", 1, 6)]


def test_failing_listener_does_not_block_others(arbiter):
    changes = []

    def broken(name, old, new):
        raise RuntimeError("orchestrator unreachable")

    arbiter.add_listener(broken)
    arbiter.add_listener(lambda name, old, new: changes.append(new))

    assert arbiter.submit_vote("queue-depth", 3) == 3
    assert changes == [3]


def test_history_recorded_with_timestamps(arbiter, pool, clock):
    arbiter.submit_vote("queue-depth", 3)
    clock.advance(15)
    arbiter.submit_vote("queue-depth", 5)

    assert list(pool.history) == [(0, 3), (15, 5)]


def test_history_window_drops_old_samples(clock):
    pool = Pool("gateway", 1, 10, history_window=60)
    arbiter = ScalerArbiter(pool, clock=clock)

    arbiter.submit_vote("cpu", 2)
    clock.advance(61)
    arbiter.submit_vote("cpu", 3)

    assert list(pool.history) == [(61, 3)]


def test_bounds_hold_for_random_vote_sequences(arbiter, pool):
    rng = random.Random(7)
    for _ in range(500):
        arbiter.submit_vote(rng.choice(["a", "b", "c"]), rng.randint(-5, 50))
        assert pool.min_replicas <= arbiter.desired_replicas <= pool.max_replicas


def test_concurrent_votes_are_not_lost(arbiter):
    """Each thread's last vote is kept and the result is the max of all of them."""
    final_votes = {f"scaler-{i}": i + 1 for i in range(8)}

    def vote(name, final):
        for value in range(1, final + 1):
            arbiter.submit_vote(name, value)

    threads = [threading.Thread(target=vote, args=(name, final)) for name, final in final_votes.items()]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert arbiter.get_votes() == final_votes
    assert arbiter.desired_replicas == 8


def test_snapshot_is_a_copy(pool, arbiter):
    arbiter.submit_vote("queue-depth", 4)
    snapshot = pool.snapshot()
    snapshot["desired_replicas"] = 99

    assert pool.desired_replicas == 4
    assert snapshot["history"] == [(0, 4)]
