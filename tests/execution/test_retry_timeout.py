"""Tests for shipyard.execution: wait schedules and time limits."""

from __future__ import annotations

import threading

import pytest

from shipyard.execution.retry import ConstantBackoff, ExponentialBackoff
from shipyard.execution.timeout import Deadline, TimeoutExpired, run_with_timeout


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestExponentialBackoff:
    def test_first_attempt_never_waits(self):
        assert ExponentialBackoff(base_delay=2.0).delay_before(1) == 0.0

    def test_doubles_until_capped(self):
        backoff = ExponentialBackoff(max_attempts=7, base_delay=2.0, max_delay=30.0)
        assert [delay for _, delay in backoff.schedule()] == [0.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    def test_total_wait(self):
        assert ExponentialBackoff(max_attempts=4, base_delay=2.0).total_wait() == 28.0

    def test_allows(self):
        backoff = ExponentialBackoff(max_attempts=2)
        assert backoff.allows(2)
        assert not backoff.allows(3)
        assert not backoff.allows(0)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            ExponentialBackoff(max_attempts=0)


class TestConstantBackoff:
    def test_constant(self):
        backoff = ConstantBackoff(max_attempts=3, delay=0.5)
        assert [delay for _, delay in backoff.schedule()] == [0.0, 0.5, 0.5]
        assert not backoff.allows(4)


class TestDeadline:
    def test_not_expired(self):
        clock = FakeClock()
        deadline = Deadline(60, "deploy demo", clock=clock)
        clock.now += 59
        deadline.check()
        assert deadline.remaining() == pytest.approx(1.0)

    def test_expired_raises(self):
        clock = FakeClock()
        deadline = Deadline(30, "deploy demo", clock=clock)
        clock.now += 31
        with pytest.raises(TimeoutExpired) as exc_info:
            deadline.check("deploy demo (preparing)")
        assert exc_info.value.operation == "deploy demo (preparing)"
        assert exc_info.value.elapsed == pytest.approx(31.0)
        assert deadline.remaining() == 0.0

    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            Deadline(0)


class TestRunWithTimeout:
    def test_returns_value(self):
        assert run_with_timeout(lambda a, b: a + b, 1.0, 1, 2) == 3

    def test_propagates_exception(self):
        def boom():
            raise OSError("refused")

        with pytest.raises(OSError, match="refused"):
            run_with_timeout(boom, 1.0)

    def test_times_out(self):
        release = threading.Event()

        try:
            with pytest.raises(TimeoutExpired) as exc_info:
                run_with_timeout(release.wait, 0.05, 2, operation="http probe")
            assert exc_info.value.operation == "http probe"
            assert isinstance(exc_info.value, TimeoutError)
        finally:
            release.set()
