"""
Service graph and deployment plan.

Handles:
- Static description of services and their startup dependencies
- Deterministic topological ordering (ties broken by declaration order)
- Cycle and unknown-dependency rejection at construction time
- Ready-set queries so independent services can start concurrently
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Callable, Iterable, Tuple, AbstractSet

from .config import DeployConfig
from .errors import CyclicDependencyError, GraphError, ServiceStartError, UnknownDependencyError
from .probes import Probe, CommandProbe, HttpProbe
from .services import (
    ServiceManager,
    DATASTORE_SERVICE,
    CACHE_SERVICE,
    APP_SERVICE,
    PROXY_SERVICE,
)

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Orchestrator phase in which a service is started."""
    DEPENDENCIES = 1
    APP = 2
    PROXY = 3


def _noop():
    return None


@dataclass
class ServiceSpec:
    """One service in the graph."""
    name: str
    depends_on: List[str] = field(default_factory=list)
    probe: Optional[Probe] = None
    start: Callable[[], None] = _noop
    stop: Callable[[], None] = _noop
    stage: Stage = Stage.DEPENDENCIES
    critical: bool = True
    max_attempts: Optional[int] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class DeploymentPlan:
    """Immutable start order computed once per run."""
    services: Tuple[ServiceSpec, ...]

    @property
    def order(self) -> List[str]:
        return [s.name for s in self.services]

    def for_stage(self, stage: Stage) -> List[ServiceSpec]:
        return [s for s in self.services if s.stage == stage]

    def __len__(self) -> int:
        return len(self.services)


class ServiceGraph:
    """Validated dependency graph over a set of ServiceSpecs."""

    def __init__(self, specs: Iterable[ServiceSpec]):
        self._specs: Dict[str, ServiceSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise GraphError(f"Duplicate service name: {spec.name}")
            self._specs[spec.name] = spec

        self._check_references()
        self._order = self._topological_order()
        self._check_stages()

    def _check_references(self):
        for spec in self._specs.values():
            for dep in spec.depends_on:
                if dep not in self._specs:
                    raise UnknownDependencyError(f"Service {spec.name} depends on unknown service {dep}")

    def _check_stages(self):
        for spec in self._specs.values():
            for dep in spec.depends_on:
                if self._specs[dep].stage.value > spec.stage.value:
                    raise GraphError(
                        f"Service {spec.name} ({spec.stage.name}) depends on {dep}, "
                        f"which starts later ({self._specs[dep].stage.name})"
                    )

    def _topological_order(self) -> List[str]:
        # Kahn's algorithm; scanning in declaration order keeps ties stable
        declared = list(self._specs)
        remaining = {name: set(self._specs[name].depends_on) for name in declared}
        order: List[str] = []

        while remaining:
            ready = [name for name in declared if name in remaining and not remaining[name]]
            if not ready:
                raise CyclicDependencyError(self._find_cycle(remaining))
            name = ready[0]
            order.append(name)
            del remaining[name]
            for deps in remaining.values():
                deps.discard(name)

        return order

    def _find_cycle(self, remaining: Dict[str, set]) -> List[str]:
        """Walk unresolved edges until a node repeats."""
        start = next(iter(remaining))
        path: List[str] = []
        seen: Dict[str, int] = {}
        node = start
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = sorted(remaining[node], key=list(self._specs).index)[0]
        return path[seen[node]:] + [node]

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def __getitem__(self, name: str) -> ServiceSpec:
        return self._specs[name]

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def plan(self) -> DeploymentPlan:
        return DeploymentPlan(services=tuple(self._specs[name] for name in self._order))

    def ready(
        self,
        completed: AbstractSet[str],
        started: AbstractSet[str] = frozenset(),
        stage: Optional[Stage] = None,
    ) -> List[ServiceSpec]:
        """Services not yet started whose dependencies have all completed, in plan order."""
        result = []
        for name in self._order:
            spec = self._specs[name]
            if name in completed or name in started:
                continue
            if stage is not None and spec.stage != stage:
                continue
            if all(dep in completed for dep in spec.depends_on):
                result.append(spec)
        return result

    def next_ready(
        self,
        completed: AbstractSet[str],
        started: AbstractSet[str] = frozenset(),
    ) -> Optional[ServiceSpec]:
        ready = self.ready(completed, started)
        return ready[0] if ready else None


def _compose_action(manager: ServiceManager, name: str, action: str) -> Callable[[], None]:
    def run():
        ok = manager.start(name) if action == "start" else manager.stop(name)
        if not ok:
            raise ServiceStartError(name, f"docker compose {action} failed")
    return run


def default_services(
    config: DeployConfig,
    manager: ServiceManager,
    before_proxy_start: Optional[Callable[[], None]] = None,
) -> List[ServiceSpec]:
    """
    The canonical HelpBoard graph: db -> redis -> app -> nginx.

    before_proxy_start runs ahead of the nginx container start; the
    orchestrator uses it to hand the current certificate to the proxy.
    """
    user = config.datastore.user
    database = config.datastore.database or "helpboard"

    start_proxy = _compose_action(manager, PROXY_SERVICE, "start")

    def proxy_start():
        if before_proxy_start:
            before_proxy_start()
        start_proxy()

    return [
        ServiceSpec(
            name=DATASTORE_SERVICE,
            probe=CommandProbe(manager.exec_command(DATASTORE_SERVICE, ["pg_isready", "-U", user, "-d", database])),
            start=_compose_action(manager, DATASTORE_SERVICE, "start"),
            stop=_compose_action(manager, DATASTORE_SERVICE, "stop"),
            stage=Stage.DEPENDENCIES,
        ),
        ServiceSpec(
            name=CACHE_SERVICE,
            depends_on=[DATASTORE_SERVICE],
            probe=CommandProbe(manager.exec_command(CACHE_SERVICE, ["redis-cli", "ping"])),
            start=_compose_action(manager, CACHE_SERVICE, "start"),
            stop=_compose_action(manager, CACHE_SERVICE, "stop"),
            stage=Stage.DEPENDENCIES,
        ),
        ServiceSpec(
            name=APP_SERVICE,
            depends_on=[DATASTORE_SERVICE, CACHE_SERVICE],
            probe=HttpProbe(f"http://localhost:{config.app_port}/api/health"),
            start=_compose_action(manager, APP_SERVICE, "start"),
            stop=_compose_action(manager, APP_SERVICE, "stop"),
            stage=Stage.APP,
        ),
        ServiceSpec(
            name=PROXY_SERVICE,
            depends_on=[APP_SERVICE],
            probe=HttpProbe(f"http://localhost:{config.proxy_http_port}/health"),
            start=proxy_start,
            stop=_compose_action(manager, PROXY_SERVICE, "stop"),
            stage=Stage.PROXY,
        ),
    ]
