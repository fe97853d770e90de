"""Test health gating and backoff."""

import threading
import time

import pytest

from helpboard_deployer.health import GateStatus, HealthGate, backoff_schedule, unhealthy

from .fakes import FakeProbe


class FakeClock:
    """Monotonic clock that only moves when the gate sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, delay: float) -> bool:
        self.sleeps.append(delay)
        self.now += delay
        return False


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(clock):
    return HealthGate(base_interval=2.0, max_interval=30.0, clock=clock, sleep=clock.sleep)


class TestBackoffSchedule:
    """Test the delay sequence."""

    def test_doubles_from_base(self):
        assert backoff_schedule(5, 2.0, 30.0) == [2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_interval(self):
        assert backoff_schedule(8, 2.0, 30.0) == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    def test_single_attempt_has_no_delay(self):
        assert backoff_schedule(1, 2.0, 30.0) == []


class TestHealthGate:
    """Test HealthGate.wait."""

    def test_never_ready_is_bounded(self, gate, clock):
        probe = FakeProbe(ready_after=None)

        result = gate.wait("db", probe, timeout=300, max_attempts=5)

        assert result.status == GateStatus.TIMED_OUT
        assert result.attempts == 5
        assert probe.calls == 5
        assert clock.sleeps == [2.0, 4.0, 8.0, 16.0]
        assert result.elapsed_seconds <= 30.0
        assert gate.max_wait(5) == 30.0

    def test_stops_at_first_success(self, gate, clock):
        probe = FakeProbe(ready_after=3)

        result = gate.wait("app", probe, timeout=300, max_attempts=5)

        assert result.healthy
        assert result.attempts == 3
        assert clock.sleeps == [2.0, 4.0]

    def test_immediately_ready_never_sleeps(self, gate, clock):
        result = gate.wait("redis", FakeProbe(), timeout=300, max_attempts=5)

        assert result.healthy
        assert result.attempts == 1
        assert clock.sleeps == []

    def test_probe_exceptions_count_as_attempts(self, gate):
        probe = FakeProbe(error=ConnectionError("refused"))

        result = gate.wait("app", probe, timeout=300, max_attempts=3)

        assert result.status == GateStatus.TIMED_OUT
        assert result.attempts == 3
        assert len(result.errors) == 3
        assert "ConnectionError: refused" in result.last_error

    def test_timeout_cuts_retries_short(self, gate, clock):
        probe = FakeProbe(ready_after=None)

        result = gate.wait("db", probe, timeout=5, max_attempts=10)

        # 0s attempt, sleep 2, 2s attempt; a further 4s sleep would pass 5s
        assert result.attempts == 2
        assert clock.sleeps == [2.0]
        assert result.status == GateStatus.TIMED_OUT

    def test_cancelled_before_first_attempt(self, clock):
        event = threading.Event()
        event.set()
        gate = HealthGate(cancel_event=event, clock=clock, sleep=clock.sleep)
        probe = FakeProbe()

        result = gate.wait("db", probe, timeout=300, max_attempts=5)

        assert result.status == GateStatus.CANCELLED
        assert probe.calls == 0

    def test_cancelled_during_sleep(self, clock):
        event = threading.Event()

        def sleep(delay):
            event.set()
            return True

        gate = HealthGate(cancel_event=event, clock=clock, sleep=sleep)
        probe = FakeProbe(ready_after=None)

        result = gate.wait("db", probe, timeout=300, max_attempts=5)

        assert result.status == GateStatus.CANCELLED
        assert probe.calls == 1

    def test_cancellation_interrupts_real_wait_promptly(self):
        event = threading.Event()
        gate = HealthGate(base_interval=60.0, max_interval=60.0, cancel_event=event)
        timer = threading.Timer(0.05, event.set)
        timer.start()
        started = time.monotonic()
        try:
            result = gate.wait("app", FakeProbe(ready_after=None), timeout=600, max_attempts=5)
        finally:
            timer.cancel()

        assert result.status == GateStatus.CANCELLED
        assert time.monotonic() - started < 5.0


class TestSweep:
    """Test the final verification sweep."""

    def test_single_attempt_per_service(self, gate, clock):
        probes = {"db": FakeProbe(), "app": FakeProbe(ready_after=None), "nginx": FakeProbe()}

        results = gate.sweep(probes)

        assert set(results) == {"db", "app", "nginx"}
        assert all(p.calls == 1 for p in probes.values())
        assert unhealthy(results.values()) == ["app"]
        assert clock.sleeps == []

    def test_empty_sweep(self, gate):
        assert gate.sweep({}) == {}
