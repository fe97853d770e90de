"""
Error taxonomy for the HelpBoard deployer.

Components raise these; the orchestrator is the only place that decides
whether a failure is fatal, degradable, or triggers a rollback.
"""

from typing import Dict, List, Optional


class DeployerError(Exception):
    """Base class for all deployer errors."""
    pass


class ValidationError(DeployerError):
    """Missing or malformed configuration. Fixed by editing the environment."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        details = "; ".join(f"{key}: {msg}" for key, msg in sorted(self.errors.items()))
        super().__init__(f"Invalid configuration ({len(self.errors)} problem(s)): {details}")

    @property
    def keys(self) -> List[str]:
        return sorted(self.errors)


class GraphError(DeployerError):
    """The service graph is malformed."""
    pass


class CyclicDependencyError(GraphError):
    """The service graph has no valid start order."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic service dependency: {' -> '.join(self.cycle)}")


class UnknownDependencyError(GraphError):
    """A service depends on a name that is not in the graph."""
    pass


class InvalidTransitionError(DeployerError):
    """Illegal phase or run state transition attempted."""
    pass


class ServiceStartError(DeployerError):
    """A service start or stop action failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class HealthCheckTimedOut(DeployerError):
    """Readiness probe never succeeded within the gate's bounds."""

    def __init__(self, service: str, attempts: int, elapsed: float, last_error: Optional[str] = None):
        self.service = service
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        message = f"{service} not healthy after {attempts} attempt(s) in {elapsed:.1f}s"
        if last_error:
            message += f" (last error: {last_error})"
        super().__init__(message)


class CertificateError(DeployerError):
    """Primary certificate issuance failed. Always recovered via fallback."""
    pass


class MigrationError(DeployerError):
    """A migration step failed; the remaining steps were not applied."""

    def __init__(self, step: str, operation: str, cause: Exception):
        self.step = step
        self.operation = operation
        self.cause = cause
        super().__init__(f"Migration '{step}' failed at {operation}: {cause}")


class RollbackError(DeployerError):
    """Restoring a snapshot failed. The last line of defense did not hold."""

    def __init__(self, snapshot_id: Optional[str], message: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Rollback to {snapshot_id or '<none>'} failed: {message}")


class DatastoreError(DeployerError):
    """Datastore connection, dump or restore failure."""
    pass


class DeploymentCancelled(DeployerError):
    """The run-scoped cancellation signal was set."""
    pass


class BackupError(DeployerError):
    """A snapshot could not be captured."""
    pass
