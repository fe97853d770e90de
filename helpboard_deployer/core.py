"""
Core deployment orchestration for HelpBoard.

Handles:
- Phase sequencing: validation, TLS, dependency/app startup, migrations,
  proxy startup and final verification
- Fatal vs degradable phase outcomes
- Concurrent startup of independent services from the graph's ready set
- Automatic rollback to the run's snapshot after a fatal failure
- Status, manual backup, rollback and certificate renewal operations
"""

import time
import secrets
import threading
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any, Callable, Mapping, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from concurrent.futures import ThreadPoolExecutor, Future, wait, FIRST_COMPLETED

from .backup import BackupManager, BackupSnapshot
from .certificates import CertbotIssuer, CertificateProvisioner, CertificateRecord, PublicAddressResolver
from .config import DeployConfig, EnvironmentValidator
from .datastore import Datastore, create_datastore
from .errors import (
    DeployerError,
    DeploymentCancelled,
    HealthCheckTimedOut,
    RollbackError,
    ServiceStartError,
)
from .graph import ServiceGraph, ServiceSpec, Stage, default_services
from .health import GateResult, GateStatus, HealthGate, unhealthy
from .migrations import Migration, MigrationLog, MigrationRecord, SchemaBootstrapper, helpboard_migrations
from .services import ServiceManager, ServiceStatus, DATASTORE_SERVICE, PROXY_SERVICE
from .state import PhaseState, PhaseTracker, RunState, RunTracker, StatusReport, StatusStore


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Final classification of a deployment run."""
    SUCCESS = "success"
    SUCCESS_WITH_FALLBACK = "success_with_fallback"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class Criticality(Enum):
    """Whether a failing phase aborts the run."""
    FATAL = "fatal"
    DEGRADABLE = "degradable"


@dataclass
class PhaseResult:
    """Outcome of one orchestrator phase."""
    phase: RunState
    criticality: Criticality
    success: bool = True
    degraded: bool = False
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)
    duration_seconds: float = 0.0

    @property
    def fatal(self) -> bool:
        return not self.success and self.criticality == Criticality.FATAL


@dataclass
class RollbackResult:
    """Result of restoring a snapshot."""
    snapshot_id: str
    services_restarted: List[str] = field(default_factory=list)
    services_failed: List[str] = field(default_factory=list)

    @property
    def all_services_started(self) -> bool:
        return not self.services_failed


@dataclass
class DeploymentOutcome:
    """Everything an operator or calling automation needs about a run."""
    run_id: str
    outcome: Optional[Outcome] = None
    run_transitions: List[RunState] = field(default_factory=list)
    service_transitions: List[Tuple[str, PhaseState, PhaseState]] = field(default_factory=list)
    phases: List[PhaseResult] = field(default_factory=list)
    failing_phase: Optional[RunState] = None
    error: Optional[str] = None
    exception: Optional[Exception] = field(default=None, repr=False)
    certificate: Optional[CertificateRecord] = None
    migration: Optional[MigrationRecord] = None
    snapshot_id: Optional[str] = None
    rollback: Optional[RollbackResult] = None
    rollback_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.SUCCESS_WITH_FALLBACK)

    @property
    def final_state(self) -> RunState:
        return self.run_transitions[-1] if self.run_transitions else RunState.PENDING

    def summary(self) -> List[str]:
        """Human-readable report lines."""
        lines = [f"Run {self.run_id}: {self.outcome.value if self.outcome else 'incomplete'}"]
        if self.failing_phase:
            lines.append(f"Failing phase: {self.failing_phase.value}")
        if self.error:
            lines.append(f"Error: {self.error}")
        if self.certificate:
            lines.append(
                f"Certificate: {self.certificate.strategy.value}, "
                f"expires {self.certificate.expires_at:%Y-%m-%d}"
            )
        if self.migration:
            lines.append(f"Schema version: {self.migration.version} ({self.migration.seeded_rows} seeded row(s))")
        if self.rollback:
            lines.append(f"Rolled back to snapshot {self.rollback.snapshot_id}")
            if self.rollback.services_failed:
                lines.append(f"Services not restarted: {', '.join(self.rollback.services_failed)}")
        if self.rollback_error:
            lines.append(f"ROLLBACK FAILED: {self.rollback_error}")
        return lines


@dataclass
class Components:
    """Collaborators built from one validated configuration."""
    config: DeployConfig
    manager: ServiceManager
    datastore: Datastore
    backups: BackupManager
    provisioner: CertificateProvisioner
    gate: HealthGate
    status_store: StatusStore
    migration_log: MigrationLog
    graph: ServiceGraph


@dataclass
class _Run:
    """Run-scoped context. A new one is built for every deploy() call."""
    run_id: str
    cancel_event: threading.Event
    tracker: RunTracker
    result: DeploymentOutcome
    components: Optional[Components] = None
    phases: PhaseTracker = field(default_factory=PhaseTracker)
    completed: Set[str] = field(default_factory=set)
    snapshot: Optional[BackupSnapshot] = None
    degraded: bool = False
    certificate_renewed: bool = False


def certificate_summary(record: CertificateRecord) -> Dict[str, Any]:
    return {
        "domain": record.domain,
        "strategy": record.strategy.value,
        "expires_at": record.expires_at.isoformat(),
        "days_remaining": int(record.days_remaining()),
        "fingerprint": record.fingerprint,
    }


class RollbackController:
    """
    Returns the host to a snapshot.

    Application-tier services are stopped, the snapshot is restored
    (all-or-nothing), then every service is started again in plan order.
    Dependency-stage services keep running so the datastore can accept
    the restore.
    """

    def __init__(self, backups: BackupManager, graph: ServiceGraph, status_store: StatusStore):
        self.backups = backups
        self.graph = graph
        self.status_store = status_store

    def rollback(self, snapshot: Optional[BackupSnapshot] = None) -> RollbackResult:
        snapshot = snapshot or self.backups.latest()
        if snapshot is None:
            raise RollbackError(None, "no snapshot available")

        logger.warning(f"Rolling back to snapshot {snapshot.id}")
        plan = self.graph.plan()

        for spec in reversed(plan.services):
            if spec.stage == Stage.DEPENDENCIES:
                continue
            try:
                spec.stop()
            except DeployerError as e:
                logger.warning(f"Could not stop {spec.name} before restore: {e}")

        self.backups.restore(snapshot)

        result = RollbackResult(snapshot_id=snapshot.id)
        for spec in plan.services:
            try:
                spec.start()
                result.services_restarted.append(spec.name)
            except DeployerError as e:
                logger.error(f"Could not restart {spec.name} after restore: {e}")
                result.services_failed.append(spec.name)

        # The restored status file holds the pre-failure service states
        report = self.status_store.load() or StatusReport()
        report.run_state = RunState.ROLLED_BACK
        report.outcome = Outcome.ROLLED_BACK.value
        report.restored_snapshot = snapshot.id
        self.status_store.save(report)

        logger.info(f"Rollback to {snapshot.id} completed")
        return result


ServiceFactory = Callable[[DeployConfig, ServiceManager, Callable[[], None]], List[ServiceSpec]]


class Orchestrator:
    """
    Main deployment orchestrator for a HelpBoard host.

    Configuration is re-read and re-validated on every operation; no
    state from a previous run is trusted. Collaborators are built per
    run from the factories, which tests replace with fakes.
    """

    def __init__(
        self,
        env_loader: Callable[[], Mapping[str, str]],
        env_file: Optional[Path] = None,
        validator: Optional[EnvironmentValidator] = None,
        manager_factory: Callable[[DeployConfig], ServiceManager] = ServiceManager,
        datastore_factory: Optional[Callable[[DeployConfig, ServiceManager], Datastore]] = None,
        service_factory: ServiceFactory = default_services,
        provisioner_factory: Optional[
            Callable[[DeployConfig, ServiceManager, threading.Event], CertificateProvisioner]
        ] = None,
        gate_factory: Optional[Callable[[DeployConfig, threading.Event], HealthGate]] = None,
        migrations_factory: Callable[[DeployConfig], List[Migration]] = helpboard_migrations,
        prepare_host: bool = True,
    ):
        self.env_loader = env_loader
        self.env_file = env_file
        self.validator = validator or EnvironmentValidator()
        self.manager_factory = manager_factory
        self.datastore_factory = datastore_factory or self._default_datastore
        self.service_factory = service_factory
        self.provisioner_factory = provisioner_factory or self._default_provisioner
        self.gate_factory = gate_factory or self._default_gate
        self.migrations_factory = migrations_factory
        self.prepare_host = prepare_host

        self._current: Optional[_Run] = None
        self._lock = threading.Lock()

    # Component construction

    @staticmethod
    def _default_datastore(config: DeployConfig, manager: ServiceManager) -> Datastore:
        return create_datastore(
            config.datastore,
            command_prefix=lambda cmd: manager.exec_command(DATASTORE_SERVICE, cmd),
        )

    @staticmethod
    def _default_provisioner(
        config: DeployConfig,
        manager: ServiceManager,
        cancel_event: threading.Event,
    ) -> CertificateProvisioner:
        issuer = CertbotIssuer(
            config.certbot_dir,
            http_port=config.proxy_http_port,
            prepare=lambda: manager.stop(PROXY_SERVICE),
        )
        return CertificateProvisioner(
            config.ssl_dir,
            issuer=issuer,
            resolver=PublicAddressResolver(),
            email=config.acme_email,
            staging=config.acme_staging,
            validity_days=config.cert_validity_days,
            renewal_days=config.cert_renewal_days,
            cancel_event=cancel_event,
        )

    @staticmethod
    def _default_gate(config: DeployConfig, cancel_event: threading.Event) -> HealthGate:
        return HealthGate(
            base_interval=config.health.base_interval,
            max_interval=config.health.max_interval,
            cancel_event=cancel_event,
        )

    def validate(self) -> DeployConfig:
        """Load and validate configuration. Raises ValidationError."""
        config = self.validator.validate(self.env_loader())
        config.env_file = self.env_file
        return config

    def _build(self, config: DeployConfig, cancel_event: threading.Event) -> Components:
        manager = self.manager_factory(config)
        datastore = self.datastore_factory(config, manager)
        provisioner = self.provisioner_factory(config, manager, cancel_event)

        def require_certificate():
            if provisioner.current() is None:
                raise ServiceStartError(PROXY_SERVICE, "no TLS certificate installed")

        # CyclicDependencyError surfaces here, before anything is started
        graph = ServiceGraph(self.service_factory(config, manager, require_certificate))

        return Components(
            config=config,
            manager=manager,
            datastore=datastore,
            backups=BackupManager(config, datastore),
            provisioner=provisioner,
            gate=self.gate_factory(config, cancel_event),
            status_store=StatusStore(config.status_path),
            migration_log=MigrationLog(config.migration_log_path),
            graph=graph,
        )

    # Deployment

    def deploy(
        self,
        progress_callback: Optional[Callable[[str], None]] = None,
        take_snapshots: Optional[bool] = None,
    ) -> DeploymentOutcome:
        """
        Run every phase once.

        Args:
            progress_callback: Optional callback for progress updates
            take_snapshots: Override BACKUP_BEFORE_DEPLOY for this run

        Returns:
            DeploymentOutcome for this run
        """
        start_time = time.time()
        run_id = f"{datetime.now():%Y%m%d_%H%M%S}_{secrets.token_hex(3)}"
        run = _Run(
            run_id=run_id,
            cancel_event=threading.Event(),
            tracker=RunTracker(),
            result=DeploymentOutcome(run_id=run_id),
        )
        with self._lock:
            self._current = run

        def progress(msg: str):
            logger.info(msg)
            if progress_callback:
                progress_callback(msg)

        phases: List[Tuple[RunState, Criticality, Callable[[_Run], bool], str]] = [
            (RunState.VALIDATING, Criticality.FATAL,
             lambda r: self._phase_validate(r, take_snapshots), "Validating configuration..."),
            (RunState.PROVISIONING_TLS, Criticality.DEGRADABLE,
             self._phase_tls, "Provisioning TLS certificate..."),
            (RunState.STARTING_DEPENDENCIES, Criticality.FATAL,
             lambda r: self._start_stage(r, Stage.DEPENDENCIES), "Starting datastore and cache..."),
            (RunState.STARTING_APP, Criticality.FATAL,
             lambda r: self._start_stage(r, Stage.APP), "Starting application..."),
            (RunState.MIGRATING, Criticality.FATAL,
             lambda r: self._phase_migrate(r, take_snapshots), "Applying migrations and seed data..."),
            (RunState.STARTING_PROXY, Criticality.FATAL,
             self._phase_proxy, "Starting reverse proxy..."),
            (RunState.VERIFYING, Criticality.FATAL,
             self._phase_verify, "Verifying services..."),
        ]

        try:
            for state, criticality, action, message in phases:
                progress(message)
                result = self._run_phase(run, state, criticality, action)
                run.result.phases.append(result)
                if result.fatal:
                    progress(f"Phase {state.value} failed: {result.error}")
                    self._fail(run, result, progress)
                    break
                if result.degraded:
                    progress(f"Phase {state.value} degraded: {result.error or 'fallback in use'}")
            else:
                run.tracker.advance(RunState.DONE)
                run.result.outcome = Outcome.SUCCESS_WITH_FALLBACK if run.degraded else Outcome.SUCCESS
                self._persist(run)
                progress(f"Deployment finished: {run.result.outcome.value}")
        finally:
            with self._lock:
                self._current = None

        run.result.run_transitions = list(run.tracker.transitions)
        run.result.service_transitions = list(run.phases.transitions)
        run.result.duration_seconds = time.time() - start_time
        return run.result

    def cancel(self) -> bool:
        """Signal the in-flight run to stop. Returns False when nothing is running."""
        with self._lock:
            run = self._current
        if run is None:
            return False
        logger.warning(f"Cancellation requested for run {run.run_id}")
        run.cancel_event.set()
        return True

    def _run_phase(
        self,
        run: _Run,
        state: RunState,
        criticality: Criticality,
        action: Callable[[_Run], bool],
    ) -> PhaseResult:
        run.tracker.advance(state)
        self._persist(run)
        result = PhaseResult(phase=state, criticality=criticality)
        started = time.time()

        try:
            if run.cancel_event.is_set():
                raise DeploymentCancelled(f"cancelled before {state.value}")
            result.degraded = bool(action(run))
        except DeploymentCancelled as e:
            # Cancellation aborts the run whatever the phase
            result.success = False
            result.criticality = Criticality.FATAL
            result.error = str(e)
            result.exception = e
        except DeployerError as e:
            result.success = False
            result.error = str(e)
            result.exception = e
        except Exception as e:
            result.success = False
            result.error = f"{type(e).__name__}: {e}"
            result.exception = e

        result.duration_seconds = time.time() - started

        if not result.success:
            if result.criticality == Criticality.DEGRADABLE:
                result.degraded = True
                logger.warning(f"Phase {state.value} degraded: {result.error}")
            else:
                logger.error(f"Phase {state.value} failed: {result.error}")
        if result.degraded:
            run.degraded = True
        return result

    def _phase_validate(self, run: _Run, take_snapshots: Optional[bool]) -> bool:
        config = self.validate()
        components = self._build(config, run.cancel_event)
        run.components = components
        run.phases = PhaseTracker(components.graph.order)

        config.setup_directories()
        if self.prepare_host:
            components.manager.ensure_docker()

        if self._snapshots_enabled(config, take_snapshots):
            run.snapshot = components.backups.snapshot("pre-deploy")
            run.result.snapshot_id = run.snapshot.id

        if self.prepare_host:
            components.manager.write_compose()
            components.manager.write_nginx_conf()
        return False

    @staticmethod
    def _snapshots_enabled(config: DeployConfig, take_snapshots: Optional[bool]) -> bool:
        return config.backup_before_deploy if take_snapshots is None else take_snapshots

    def _phase_tls(self, run: _Run) -> bool:
        config = run.components.config
        record, renewed = run.components.provisioner.renew(config.domain)
        run.result.certificate = record
        run.certificate_renewed = renewed
        return record.is_fallback

    def _phase_migrate(self, run: _Run, take_snapshots: Optional[bool]) -> bool:
        components = run.components
        if self._snapshots_enabled(components.config, take_snapshots):
            run.snapshot = components.backups.snapshot("pre-migration", require_database=True)
            run.result.snapshot_id = run.snapshot.id

        bootstrapper = SchemaBootstrapper(components.datastore, components.migration_log)
        run.result.migration = bootstrapper.apply(self.migrations_factory(components.config))
        return False

    def _phase_proxy(self, run: _Run) -> bool:
        degraded = self._start_stage(run, Stage.PROXY)
        if run.certificate_renewed:
            run.components.manager.reload_proxy()
        return degraded

    def _phase_verify(self, run: _Run) -> bool:
        components = run.components
        graph = components.graph
        probes = {
            name: graph[name].probe
            for name in graph.order
            if graph[name].probe is not None and run.phases.get(name) == PhaseState.HEALTHY
        }
        results = components.gate.sweep(probes, max_workers=components.config.max_parallel_starts)

        degraded = False
        fatal: List[GateResult] = []
        for name in unhealthy(results.values()):
            if graph[name].critical:
                run.phases.transition(name, PhaseState.FAILED)
                fatal.append(results[name])
            else:
                run.phases.transition(name, PhaseState.DEGRADED)
                degraded = True
                logger.warning(f"{name} failed final verification (non-critical)")

        if fatal:
            first = fatal[0]
            raise HealthCheckTimedOut(first.service, first.attempts, first.elapsed_seconds, first.last_error)
        return degraded

    # Service startup

    def _start_stage(self, run: _Run, stage: Stage) -> bool:
        """Start every service of a stage, independent ones concurrently."""
        components = run.components
        graph = components.graph
        started: Set[str] = set()
        failures: List[DeployerError] = []
        degraded = False

        with ThreadPoolExecutor(max_workers=components.config.max_parallel_starts) as executor:
            futures: Dict[Future, ServiceSpec] = {}
            while True:
                if not failures and not run.cancel_event.is_set():
                    for spec in graph.ready(run.completed, started, stage=stage):
                        started.add(spec.name)
                        run.phases.transition(spec.name, PhaseState.RUNNING)
                        logger.info(f"Starting {spec.name}")
                        futures[executor.submit(self._start_service, run, spec)] = spec

                if not futures:
                    break

                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    spec = futures.pop(future)
                    error = self._service_result(run, spec, future)
                    if error is None:
                        continue
                    if spec.critical or isinstance(error, DeploymentCancelled):
                        failures.append(error)
                    else:
                        degraded = True

        if failures:
            raise failures[0]

        missing = [s.name for s in graph.plan().for_stage(stage) if s.name not in started]
        if missing:
            if run.cancel_event.is_set():
                raise DeploymentCancelled(f"cancelled before starting {', '.join(missing)}")
            raise ServiceStartError(missing[0], "dependencies never became ready")
        return degraded

    def _start_service(self, run: _Run, spec: ServiceSpec) -> GateResult:
        """Worker: start one service and wait for it to become healthy."""
        spec.start()
        if spec.probe is None:
            return GateResult(service=spec.name, status=GateStatus.HEALTHY)

        health = run.components.config.health
        return run.components.gate.wait(
            spec.name,
            spec.probe,
            timeout=spec.timeout if spec.timeout is not None else health.timeout,
            max_attempts=spec.max_attempts or health.max_attempts,
        )

    def _service_result(self, run: _Run, spec: ServiceSpec, future: Future) -> Optional[DeployerError]:
        """Record a finished start in the phase tracker. Returns the error, if any."""
        error: Optional[DeployerError] = None
        try:
            gate_result = future.result()
        except DeployerError as e:
            error = e
        except Exception as e:
            error = ServiceStartError(spec.name, f"{type(e).__name__}: {e}")
        else:
            if gate_result.healthy:
                run.phases.transition(spec.name, PhaseState.HEALTHY)
                run.completed.add(spec.name)
                return None
            if gate_result.status == GateStatus.CANCELLED:
                error = DeploymentCancelled(f"{spec.name}: health wait cancelled")
            else:
                error = HealthCheckTimedOut(
                    spec.name, gate_result.attempts, gate_result.elapsed_seconds, gate_result.last_error
                )

        if spec.critical or isinstance(error, DeploymentCancelled):
            run.phases.transition(spec.name, PhaseState.FAILED)
            logger.error(f"{spec.name} failed: {error}")
        else:
            # Dependents of a non-critical service still start
            run.phases.transition(spec.name, PhaseState.DEGRADED)
            run.completed.add(spec.name)
            logger.warning(f"{spec.name} degraded: {error}")
        return error

    # Failure handling

    def _fail(self, run: _Run, result: PhaseResult, progress: Callable[[str], None]):
        run.tracker.advance(RunState.FAILED)
        run.result.outcome = Outcome.FAILED
        run.result.failing_phase = result.phase
        run.result.error = result.error
        run.result.exception = result.exception
        self._persist(run)

        if run.snapshot is None or run.components is None:
            logger.error(f"Deployment failed in {result.phase.value}; no snapshot to roll back to")
            return

        run.tracker.advance(RunState.ROLLING_BACK)
        self._persist(run)
        progress(f"Rolling back to snapshot {run.snapshot.id}...")

        components = run.components
        controller = RollbackController(components.backups, components.graph, components.status_store)
        try:
            run.result.rollback = controller.rollback(run.snapshot)
        except RollbackError as e:
            logger.critical(f"Rollback failed, host state is unknown: {e}")
            run.tracker.advance(RunState.FAILED)
            run.result.rollback_error = str(e)
            self._persist(run)
            return

        run.tracker.advance(RunState.ROLLED_BACK)
        run.result.outcome = Outcome.ROLLED_BACK
        run.phases.reset_all()

        # Keep the restored service states, annotate with this run's failure
        report = components.status_store.load() or StatusReport()
        report.run_id = run.run_id
        report.failing_phase = result.phase.value
        report.error = result.error
        report.snapshot_id = run.snapshot.id
        components.status_store.save(report)
        progress(f"Restored snapshot {run.snapshot.id}")

    def _persist(self, run: _Run):
        components = run.components
        if components is None:
            return
        report = StatusReport(
            run_id=run.run_id,
            run_state=run.tracker.state,
            outcome=run.result.outcome.value if run.result.outcome else None,
            services={name: run.phases.get(name) for name in components.graph.order},
            failing_phase=run.result.failing_phase.value if run.result.failing_phase else None,
            error=run.result.error,
            certificate=certificate_summary(run.result.certificate) if run.result.certificate else None,
            migration_version=run.result.migration.version if run.result.migration else None,
            snapshot_id=run.result.snapshot_id,
        )
        components.status_store.save(report)

    # Operator operations

    def status(self) -> StatusReport:
        """Persisted status, refreshed with the installed certificate and schema version."""
        config = self.validate()
        components = self._build(config, threading.Event())
        report = components.status_store.load()
        if report is None:
            report = StatusReport(services={name: PhaseState.PENDING for name in components.graph.order})
        for name in components.graph.order:
            report.services.setdefault(name, PhaseState.PENDING)

        record = components.provisioner.current()
        if record is not None:
            report.certificate = certificate_summary(record)
        latest = components.migration_log.latest()
        if latest is not None:
            report.migration_version = latest.version
        return report

    def backup(self, label: str = "manual") -> BackupSnapshot:
        config = self.validate()
        config.setup_directories()
        return self._build(config, threading.Event()).backups.snapshot(label)

    def list_backups(self) -> List[BackupSnapshot]:
        config = self.validate()
        return self._build(config, threading.Event()).backups.list_snapshots()

    def prune_backups(self) -> List[str]:
        config = self.validate()
        return self._build(config, threading.Event()).backups.prune(config.backup_retention_days)

    def rollback(self, snapshot_id: Optional[str] = None) -> RollbackResult:
        """Restore the given snapshot, or the latest one."""
        config = self.validate()
        components = self._build(config, threading.Event())
        snapshot = None
        if snapshot_id:
            snapshot = components.backups.get(snapshot_id)
            if snapshot is None or not snapshot.complete:
                raise RollbackError(snapshot_id, "snapshot not found or incomplete")
        controller = RollbackController(components.backups, components.graph, components.status_store)
        try:
            return controller.rollback(snapshot)
        except RollbackError as e:
            logger.critical(f"Rollback failed: {e}")
            raise

    def renew_certificate(self, force: bool = False) -> Tuple[CertificateRecord, bool]:
        """Renew when due (or forced) and reload a running proxy."""
        config = self.validate()
        config.setup_directories()
        components = self._build(config, threading.Event())
        proxy_running = components.manager.get_status(PROXY_SERVICE) == ServiceStatus.RUNNING
        record, renewed = components.provisioner.renew(config.domain, force=force)
        if proxy_running:
            # ACME issuance stops the proxy to free the HTTP port
            components.manager.start(PROXY_SERVICE)
            if renewed:
                components.manager.reload_proxy()
        return record, renewed
