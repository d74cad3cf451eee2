"""Tests for recovery module."""

import random
from unittest.mock import MagicMock

import pytest

from bleak_session_manager.const import SessionConfig
from bleak_session_manager.recovery import ReconnectPolicy

ADDR = "AA:BB:CC:DD:EE:FF"


def _no_jitter(**kwargs):
    rng = MagicMock()
    rng.random.return_value = 0.5  # maps to zero jitter
    return ReconnectPolicy(random_source=rng, **kwargs)


def test_default_policy():
    policy = ReconnectPolicy()
    assert policy.max_attempts == 3
    assert policy.failure_count(ADDR) == 0


def test_from_config():
    config = SessionConfig(max_reconnect_attempts=5, reconnect_initial_delay=0.5)
    policy = ReconnectPolicy.from_config(config)
    assert policy.max_attempts == 5


def test_exponential_backoff():
    policy = _no_jitter(initial_delay=1.0, backoff=2.0, max_delay=30.0)
    assert policy.delay_for(0) == pytest.approx(1.0)
    assert policy.delay_for(1) == pytest.approx(2.0)
    assert policy.delay_for(2) == pytest.approx(4.0)


def test_backoff_capped_at_max_delay():
    policy = _no_jitter(initial_delay=1.0, backoff=10.0, max_delay=5.0)
    assert policy.delay_for(3) == pytest.approx(5.0)


def test_jitter_stays_within_bounds():
    rng = MagicMock()
    rng.random.return_value = 1.0
    policy = ReconnectPolicy(initial_delay=1.0, jitter=0.1, random_source=rng)
    assert policy.delay_for(0) == pytest.approx(1.1)
    rng.random.return_value = 0.0
    assert policy.delay_for(0) == pytest.approx(0.9)


def test_seeded_random_source_is_reproducible():
    first = ReconnectPolicy(random_source=random.Random(7))
    second = ReconnectPolicy(random_source=random.Random(7))
    delays = [first.delay_for(n) for n in range(4)]
    assert delays == [second.delay_for(n) for n in range(4)]
    assert all(0.9 * 2**n <= d <= 1.1 * 2**n for n, d in enumerate(delays))


def test_on_failure_exhausts_budget():
    policy = _no_jitter(max_attempts=2)
    assert policy.on_failure(ADDR) == pytest.approx(1.0)
    assert policy.on_failure(ADDR) == pytest.approx(2.0)
    assert policy.on_failure(ADDR) is None
    assert policy.failure_count(ADDR) == 2


def test_on_success_resets():
    policy = _no_jitter(max_attempts=1)
    policy.on_failure(ADDR)
    assert policy.on_failure(ADDR) is None
    policy.on_success(ADDR)
    assert policy.failure_count(ADDR) == 0
    assert policy.on_failure(ADDR) is not None


def test_counters_are_per_peripheral():
    policy = _no_jitter(max_attempts=1)
    policy.on_failure(ADDR)
    assert policy.on_failure("11:22:33:44:55:66") is not None


def test_forget():
    policy = _no_jitter()
    policy.on_failure(ADDR)
    policy.forget(ADDR)
    assert policy.failure_count(ADDR) == 0


def test_zero_attempts_never_reconnects():
    policy = ReconnectPolicy(max_attempts=0)
    assert policy.on_failure(ADDR) is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": -1},
        {"initial_delay": 0},
        {"initial_delay": 5.0, "max_delay": 1.0},
        {"backoff": 0.5},
        {"jitter": 1.5},
    ],
)
def test_invalid_arguments(kwargs):
    with pytest.raises(ValueError):
        ReconnectPolicy(**kwargs)
