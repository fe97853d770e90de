"""
Deployment state tracking.

Handles:
- Run state machine (PENDING -> ... -> DONE, FAILED, rollback path)
- Per-service PhaseState with forward-only transitions
- Persisted status report read by `status` and restored by rollback
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class PhaseState(Enum):
    """State of a single service within a run."""
    PENDING = "pending"
    RUNNING = "running"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


_PHASE_RANK = {
    PhaseState.PENDING: 0,
    PhaseState.RUNNING: 1,
    PhaseState.HEALTHY: 2,
    PhaseState.DEGRADED: 2,
    PhaseState.FAILED: 3,
}


class RunState(Enum):
    """Orchestrator run states."""
    PENDING = "pending"
    VALIDATING = "validating"
    PROVISIONING_TLS = "provisioning_tls"
    STARTING_DEPENDENCIES = "starting_dependencies"
    STARTING_APP = "starting_app"
    MIGRATING = "migrating"
    STARTING_PROXY = "starting_proxy"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


RUN_SEQUENCE = [
    RunState.PENDING,
    RunState.VALIDATING,
    RunState.PROVISIONING_TLS,
    RunState.STARTING_DEPENDENCIES,
    RunState.STARTING_APP,
    RunState.MIGRATING,
    RunState.STARTING_PROXY,
    RunState.VERIFYING,
    RunState.DONE,
]

TERMINAL_RUN_STATES = {RunState.DONE, RunState.FAILED, RunState.ROLLED_BACK}


def _allowed_run_transitions() -> Dict[RunState, set]:
    allowed: Dict[RunState, set] = {state: set() for state in RunState}
    for current, following in zip(RUN_SEQUENCE, RUN_SEQUENCE[1:]):
        allowed[current].add(following)
        allowed[current].add(RunState.FAILED)
    allowed[RunState.FAILED].add(RunState.ROLLING_BACK)
    allowed[RunState.ROLLING_BACK].update({RunState.ROLLED_BACK, RunState.FAILED})
    return allowed


RUN_TRANSITIONS = _allowed_run_transitions()


class RunTracker:
    """Run state with its ordered transition history."""

    def __init__(self):
        self.state = RunState.PENDING
        self.transitions: List[RunState] = [RunState.PENDING]

    def advance(self, target: RunState):
        if target not in RUN_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Run cannot move from {self.state.name} to {target.name}")
        logger.debug(f"Run state: {self.state.name} -> {target.name}")
        self.state = target
        self.transitions.append(target)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    def entered(self, state: RunState) -> bool:
        return state in self.transitions


class PhaseTracker:
    """
    PhaseState per service.

    Transitions only move forward by rank (HEALTHY -> DEGRADED is the
    one sideways move). The only way back to PENDING is reset(), the
    explicit rollback transition.
    """

    def __init__(self, services: Optional[List[str]] = None):
        self._states: Dict[str, PhaseState] = {}
        self.transitions: List[Tuple[str, PhaseState, PhaseState]] = []
        for name in services or []:
            self.register(name)

    def register(self, name: str):
        if name not in self._states:
            self._states[name] = PhaseState.PENDING

    def get(self, name: str) -> PhaseState:
        return self._states[name]

    def transition(self, name: str, target: PhaseState):
        current = self._states[name]
        sideways = current == PhaseState.HEALTHY and target == PhaseState.DEGRADED
        if not sideways and _PHASE_RANK[target] <= _PHASE_RANK[current]:
            raise InvalidTransitionError(f"{name}: cannot move from {current.name} to {target.name}")
        self._states[name] = target
        self.transitions.append((name, current, target))

    def reset(self, name: str):
        """ROLLBACK transition: any state back to PENDING."""
        current = self._states[name]
        self._states[name] = PhaseState.PENDING
        self.transitions.append((name, current, PhaseState.PENDING))

    def reset_all(self):
        for name in self._states:
            self.reset(name)

    def in_state(self, state: PhaseState) -> List[str]:
        return [name for name, s in self._states.items() if s == state]

    def as_dict(self) -> Dict[str, str]:
        return {name: state.value for name, state in self._states.items()}


@dataclass
class StatusReport:
    """What `status` shows. Persisted as state/status.json."""
    run_id: Optional[str] = None
    run_state: RunState = RunState.PENDING
    outcome: Optional[str] = None
    services: Dict[str, PhaseState] = field(default_factory=dict)
    failing_phase: Optional[str] = None
    error: Optional[str] = None
    certificate: Optional[Dict[str, Any]] = None
    migration_version: Optional[str] = None
    snapshot_id: Optional[str] = None
    restored_snapshot: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "run_state": self.run_state.value,
            "outcome": self.outcome,
            "services": {name: state.value for name, state in self.services.items()},
            "failing_phase": self.failing_phase,
            "error": self.error,
            "certificate": self.certificate,
            "migration_version": self.migration_version,
            "snapshot_id": self.snapshot_id,
            "restored_snapshot": self.restored_snapshot,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusReport":
        return cls(
            run_id=data.get("run_id"),
            run_state=RunState(data.get("run_state", RunState.PENDING.value)),
            outcome=data.get("outcome"),
            services={name: PhaseState(value) for name, value in data.get("services", {}).items()},
            failing_phase=data.get("failing_phase"),
            error=data.get("error"),
            certificate=data.get("certificate"),
            migration_version=data.get("migration_version"),
            snapshot_id=data.get("snapshot_id"),
            restored_snapshot=data.get("restored_snapshot"),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else datetime.now(),
        )


class StatusStore:
    """Last-writer-wins JSON file holding the latest StatusReport."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Optional[StatusReport]:
        if not self.path.exists():
            return None
        try:
            with open(self.path) as f:
                return StatusReport.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Unreadable status file {self.path}: {e}")
            return None

    def save(self, report: StatusReport):
        report.updated_at = datetime.now()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp, "w") as f:
            json.dump(report.to_dict(), f, indent=2)
        os.replace(tmp, self.path)
