"""Tests for server/ratelimit.py."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from server.ratelimit import FixedWindowLimiter


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestFixedWindowLimiter:
    def test_allows_up_to_limit(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(3, 1.0, clock=clock)
        assert [limiter.acquire() for _ in range(4)] == [True, True, True, False]

    def test_window_resets(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(1, 1.0, clock=clock)
        assert limiter.acquire()
        assert not limiter.acquire()
        clock.now += 1.0
        assert limiter.acquire()

    def test_retry_after(self):
        clock = FakeClock()
        limiter = FixedWindowLimiter(1, 1.0, clock=clock)
        limiter.acquire()
        clock.now += 0.25
        assert limiter.retry_after() == pytest.approx(0.75)
        clock.now += 5
        assert limiter.retry_after() == 0.0

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            FixedWindowLimiter(0)
