"""
Readiness probes used by the HealthGate.

Each probe returns a typed ProbeStatus rather than free text. A probe
that raises is treated by the gate as a failed attempt.
"""

import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import requests


class ProbeStatus(Enum):
    """Outcome of a single readiness check."""
    READY = "ready"
    NOT_READY = "not_ready"


class Probe:
    """Base readiness probe."""

    description = "probe"

    def check(self) -> ProbeStatus:
        raise NotImplementedError


@dataclass
class HttpProbe(Probe):
    """Ready when the endpoint answers with a status below 400."""
    url: str
    timeout_seconds: float = 10.0
    verify_tls: bool = False
    expected_status: Optional[int] = None

    @property
    def description(self) -> str:
        return f"GET {self.url}"

    def check(self) -> ProbeStatus:
        try:
            response = requests.get(self.url, timeout=self.timeout_seconds, verify=self.verify_tls)
        except (requests.ConnectionError, requests.Timeout):
            return ProbeStatus.NOT_READY
        if self.expected_status is not None:
            ok = response.status_code == self.expected_status
        else:
            ok = response.status_code < 400
        return ProbeStatus.READY if ok else ProbeStatus.NOT_READY


@dataclass
class CommandProbe(Probe):
    """Ready when the command exits with status 0."""
    command: List[str] = field(default_factory=list)
    timeout_seconds: float = 10.0

    @property
    def description(self) -> str:
        return " ".join(self.command)

    def check(self) -> ProbeStatus:
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds
            )
        except subprocess.TimeoutExpired:
            return ProbeStatus.NOT_READY
        return ProbeStatus.READY if result.returncode == 0 else ProbeStatus.NOT_READY
