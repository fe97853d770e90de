"""
HelpBoard Deployer
==================

Single-host deployment orchestrator for the HelpBoard support platform.

Features:
- Environment validation with every problem reported at once
- Dependency-ordered service startup gated on health checks
- Let's Encrypt certificates with a self-signed fallback
- Idempotent schema migrations and credential seeding
- Snapshots before mutation and all-or-nothing rollback

License: MIT
"""

__version__ = "1.0.0"

from .core import Orchestrator, RollbackController, DeploymentOutcome, Outcome
from .config import DeployConfig, EnvironmentValidator, load_environment
from .graph import ServiceGraph, ServiceSpec, Stage
from .health import HealthGate
from .certificates import CertificateProvisioner, CertificateRecord
from .migrations import SchemaBootstrapper
from .backup import BackupManager, BackupSnapshot

__all__ = [
    "Orchestrator",
    "RollbackController",
    "DeploymentOutcome",
    "Outcome",
    "DeployConfig",
    "EnvironmentValidator",
    "load_environment",
    "ServiceGraph",
    "ServiceSpec",
    "Stage",
    "HealthGate",
    "CertificateProvisioner",
    "CertificateRecord",
    "SchemaBootstrapper",
    "BackupManager",
    "BackupSnapshot",
]
