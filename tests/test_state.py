"""Test run and service state tracking."""

import pytest

from helpboard_deployer.errors import InvalidTransitionError
from helpboard_deployer.state import (
    RUN_SEQUENCE,
    PhaseState,
    PhaseTracker,
    RunState,
    RunTracker,
    StatusReport,
    StatusStore,
)


class TestRunTracker:
    """Test the run state machine."""

    def test_happy_path(self):
        tracker = RunTracker()
        for state in RUN_SEQUENCE[1:]:
            tracker.advance(state)

        assert tracker.state == RunState.DONE
        assert tracker.is_terminal
        assert tracker.transitions == RUN_SEQUENCE

    def test_phases_cannot_be_skipped(self):
        tracker = RunTracker()
        tracker.advance(RunState.VALIDATING)

        with pytest.raises(InvalidTransitionError):
            tracker.advance(RunState.STARTING_APP)

    def test_failure_then_rollback(self):
        tracker = RunTracker()
        tracker.advance(RunState.VALIDATING)
        tracker.advance(RunState.FAILED)
        tracker.advance(RunState.ROLLING_BACK)
        tracker.advance(RunState.ROLLED_BACK)

        assert tracker.is_terminal
        assert tracker.entered(RunState.ROLLING_BACK)
        assert not tracker.entered(RunState.PROVISIONING_TLS)

    def test_rollback_can_fail(self):
        tracker = RunTracker()
        tracker.advance(RunState.VALIDATING)
        tracker.advance(RunState.FAILED)
        tracker.advance(RunState.ROLLING_BACK)
        tracker.advance(RunState.FAILED)

        assert tracker.state == RunState.FAILED

    def test_done_is_final(self):
        tracker = RunTracker()
        for state in RUN_SEQUENCE[1:]:
            tracker.advance(state)

        with pytest.raises(InvalidTransitionError):
            tracker.advance(RunState.FAILED)


class TestPhaseTracker:
    """Test forward-only service transitions."""

    def test_forward_transitions(self):
        phases = PhaseTracker(["db"])
        phases.transition("db", PhaseState.RUNNING)
        phases.transition("db", PhaseState.HEALTHY)

        assert phases.get("db") == PhaseState.HEALTHY
        assert phases.transitions == [
            ("db", PhaseState.PENDING, PhaseState.RUNNING),
            ("db", PhaseState.RUNNING, PhaseState.HEALTHY),
        ]

    def test_backwards_rejected(self):
        phases = PhaseTracker(["db"])
        phases.transition("db", PhaseState.RUNNING)

        with pytest.raises(InvalidTransitionError):
            phases.transition("db", PhaseState.PENDING)
        with pytest.raises(InvalidTransitionError):
            phases.transition("db", PhaseState.RUNNING)

    def test_healthy_to_degraded_and_failed(self):
        phases = PhaseTracker(["app", "nginx"])
        for name in ("app", "nginx"):
            phases.transition(name, PhaseState.RUNNING)
            phases.transition(name, PhaseState.HEALTHY)

        phases.transition("app", PhaseState.DEGRADED)
        phases.transition("nginx", PhaseState.FAILED)

        assert phases.in_state(PhaseState.DEGRADED) == ["app"]
        assert phases.in_state(PhaseState.FAILED) == ["nginx"]

    def test_reset_is_the_only_way_back(self):
        phases = PhaseTracker(["db", "app"])
        phases.transition("db", PhaseState.RUNNING)
        phases.transition("db", PhaseState.FAILED)

        phases.reset_all()

        assert phases.as_dict() == {"db": "pending", "app": "pending"}
        assert phases.transitions[-2] == ("db", PhaseState.FAILED, PhaseState.PENDING)


class TestStatusStore:
    """Test the persisted status report."""

    def test_round_trip(self, tmp_path):
        store = StatusStore(tmp_path / "state" / "status.json")
        report = StatusReport(
            run_id="20260101_120000_abc123",
            run_state=RunState.DONE,
            outcome="success",
            services={"db": PhaseState.HEALTHY, "nginx": PhaseState.DEGRADED},
            migration_version="0004_seed_agents",
        )

        store.save(report)
        loaded = store.load()

        assert loaded.run_id == report.run_id
        assert loaded.run_state == RunState.DONE
        assert loaded.services == {"db": PhaseState.HEALTHY, "nginx": PhaseState.DEGRADED}
        assert loaded.migration_version == "0004_seed_agents"
        assert not list((tmp_path / "state").glob(".*.tmp"))

    def test_missing_or_corrupt(self, tmp_path):
        store = StatusStore(tmp_path / "status.json")
        assert store.load() is None

        store.path.write_text("{not json")
        assert store.load() is None
