"""
Tests for the circuit breaker and backoff helpers.
"""
import unittest

import pytest

from poolscale.utils.circuit_breaker import CircuitBreaker, CircuitState, compute_backoff


class TestCircuitBreaker(unittest.TestCase):
    """Test cases for CircuitBreaker."""

    def setUp(self):
        self.now = 0.0
        self.breaker = CircuitBreaker(
            failure_threshold=3, recovery_timeout=60, name="test", clock=lambda: self.now
        )

    def test_opens_after_threshold(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)

        self.breaker.record_failure()
        self.assertTrue(self.breaker.is_open())
        self.assertFalse(self.breaker.allow_request())

    def test_success_resets_failure_count(self):
        self.breaker.record_failure()
        self.breaker.record_failure()
        self.breaker.record_success()
        self.breaker.record_failure()

        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)
        self.assertEqual(self.breaker.failure_count, 1)

    def test_half_open_after_recovery_timeout(self):
        for _ in range(3):
            self.breaker.record_failure()

        self.now = 59.0
        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)

        self.now = 60.0
        self.assertEqual(self.breaker.get_state(), CircuitState.HALF_OPEN)
        self.assertTrue(self.breaker.allow_request())

        self.breaker.record_success()
        self.assertEqual(self.breaker.get_state(), CircuitState.CLOSED)

    def test_half_open_failure_reopens(self):
        for _ in range(3):
            self.breaker.record_failure()
        self.now = 60.0
        self.breaker.get_state()

        self.breaker.record_failure()

        self.assertEqual(self.breaker.get_state(), CircuitState.OPEN)
        self.assertEqual(self.breaker.get_status()["last_failure_time"], 60.0)

    def test_reset(self):
        for _ in range(3):
            self.breaker.record_failure()

        self.breaker.reset()

        self.assertEqual(self.breaker.get_status()["state"], "CLOSED")
        self.assertEqual(self.breaker.failure_count, 0)


@pytest.mark.parametrize(
    "attempt,expected",
    [(0, 30.0), (1, 60.0), (2, 120.0), (5, 600.0)],
)
def test_compute_backoff(attempt, expected):
    assert compute_backoff(attempt, base_delay=30, backoff_factor=2.0, max_delay=600) == expected


def test_compute_backoff_jitter_bounded():
    for _ in range(20):
        delay = compute_backoff(1, base_delay=10, jitter=True)
        assert 20.0 <= delay <= 22.0
