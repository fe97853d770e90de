"""
Health gating for HelpBoard services.

Handles:
- Bounded exponential backoff polling of readiness probes
- Prompt cancellation through a run-scoped event
- Final verification sweep across all started services
"""

import time
import threading
import logging
from typing import Optional, Dict, List, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from concurrent.futures import ThreadPoolExecutor, as_completed

from .probes import Probe, ProbeStatus

logger = logging.getLogger(__name__)


class GateStatus(Enum):
    """Terminal result of waiting on a probe."""
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class GateResult:
    """Result of one HealthGate wait."""
    service: str
    status: GateStatus
    attempts: int = 0
    elapsed_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == GateStatus.HEALTHY

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None


def backoff_schedule(max_attempts: int, base_interval: float, max_interval: float) -> List[float]:
    """
    Delays slept between attempts.

    There is no delay before the first attempt and none after the last,
    so the schedule has max_attempts - 1 entries: base, 2*base, 4*base ...
    each capped at max_interval.
    """
    delays = []
    for n in range(max(max_attempts - 1, 0)):
        delays.append(min(base_interval * (2 ** n), max_interval))
    return delays


class HealthGate:
    """
    Blocks dependents until a readiness probe succeeds.

    Every retry loop in the deployer goes through this class, so the
    backoff policy is defined once.
    """

    def __init__(
        self,
        base_interval: float = 2.0,
        max_interval: float = 30.0,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], bool]] = None,
    ):
        self.base_interval = base_interval
        self.max_interval = max_interval
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        # sleep(delay) returns True when interrupted by cancellation
        self._sleep = sleep or self.cancel_event.wait

    def max_wait(self, max_attempts: int) -> float:
        """Upper bound on the total time slept for max_attempts."""
        return sum(backoff_schedule(max_attempts, self.base_interval, self.max_interval))

    def wait(
        self,
        service_name: str,
        probe: Probe,
        timeout: float,
        max_attempts: int,
    ) -> GateResult:
        """Poll probe until ready, attempts are exhausted, the timeout passes, or the run is cancelled."""
        delays = backoff_schedule(max_attempts, self.base_interval, self.max_interval)
        result = GateResult(service=service_name, status=GateStatus.TIMED_OUT)
        start = self.clock()

        for attempt in range(1, max_attempts + 1):
            if self.cancel_event.is_set():
                result.status = GateStatus.CANCELLED
                break

            result.attempts = attempt
            try:
                status = probe.check()
                if status == ProbeStatus.READY:
                    result.status = GateStatus.HEALTHY
                    break
                logger.debug(f"{service_name}: not ready (attempt {attempt}/{max_attempts})")
            except Exception as e:
                # Unexpected probe errors count as a failed attempt, never abort early
                message = f"attempt {attempt}: {type(e).__name__}: {e}"
                result.errors.append(message)
                logger.warning(f"{service_name}: probe error on {message}")

            if attempt == max_attempts:
                break

            delay = delays[attempt - 1]
            elapsed = self.clock() - start
            if elapsed + delay > timeout:
                logger.warning(f"{service_name}: next retry would exceed timeout of {timeout:.0f}s")
                break

            if self._sleep(delay) or self.cancel_event.is_set():
                result.status = GateStatus.CANCELLED
                break

        result.elapsed_seconds = self.clock() - start

        if result.status == GateStatus.HEALTHY:
            logger.info(f"{service_name} is healthy after {result.attempts} attempt(s)")
        elif result.status == GateStatus.CANCELLED:
            logger.warning(f"{service_name}: health wait cancelled after {result.attempts} attempt(s)")
        else:
            logger.error(
                f"{service_name} did not become healthy "
                f"({result.attempts} attempt(s), {result.elapsed_seconds:.1f}s)"
            )
        return result

    def check_once(self, service_name: str, probe: Probe) -> GateResult:
        """Single-attempt check used by the verification sweep."""
        return self.wait(service_name, probe, timeout=0.0, max_attempts=1)

    def sweep(self, probes: Dict[str, Probe], max_workers: int = 4) -> Dict[str, GateResult]:
        """Check every service once, in parallel."""
        results: Dict[str, GateResult] = {}
        if not probes:
            return results

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_service = {
                executor.submit(self.check_once, name, probe): name
                for name, probe in probes.items()
            }
            for future in as_completed(future_to_service):
                service = future_to_service[future]
                results[service] = future.result()

        return results


def unhealthy(results: Iterable[GateResult]) -> List[str]:
    """Names of services whose gate result is not healthy."""
    return sorted(r.service for r in results if not r.healthy)
