"""Pytest configuration and fixtures."""

import pytest

from helpboard_deployer.certificates import CertificateProvisioner
from helpboard_deployer.config import EnvironmentValidator
from helpboard_deployer.core import Orchestrator
from helpboard_deployer.datastore import SQLiteDatastore
from helpboard_deployer.health import HealthGate

from .fakes import FakeIssuer, FakeManager, FakeResolver, FakeStack


@pytest.fixture
def env_values(tmp_path):
    """A complete, valid environment backed by SQLite."""
    return {
        "DOMAIN": "helpboard.example.com",
        "DATABASE_URL": f"sqlite:///{tmp_path}/helpboard.db",
        "PGPASSWORD": "s3cret-password",
        "OPENAI_API_KEY": "sk-test-0123456789abcdefghijklmnop",
        "SESSION_SECRET": "x" * 40,
        "DEPLOY_DIR": str(tmp_path / "deploy"),
        "HEALTH_MAX_ATTEMPTS": "5",
    }


@pytest.fixture
def config(env_values):
    """Validated configuration with its directories created."""
    cfg = EnvironmentValidator().validate(env_values)
    cfg.setup_directories()
    return cfg


@pytest.fixture
def datastore(config):
    return SQLiteDatastore(config.datastore.sqlite_path)


@pytest.fixture
def stack():
    return FakeStack()


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def resolver():
    return FakeResolver(matches=True)


@pytest.fixture
def managers():
    """Every FakeManager built by an orchestrator, newest last."""
    return []


@pytest.fixture
def make_orchestrator(env_values, stack, issuer, resolver, managers):
    """Build an Orchestrator wired to fakes; keyword arguments override the defaults."""

    def manager_factory(cfg):
        manager = FakeManager(cfg)
        managers.append(manager)
        return manager

    def provisioner_factory(cfg, manager, cancel_event):
        return CertificateProvisioner(
            cfg.ssl_dir,
            issuer=issuer,
            resolver=resolver,
            email=cfg.acme_email,
            validity_days=cfg.cert_validity_days,
            renewal_days=cfg.cert_renewal_days,
            retry_delay=0,
            cancel_event=cancel_event,
        )

    def gate_factory(cfg, cancel_event):
        # No real sleeping; returns True once cancelled
        return HealthGate(
            base_interval=cfg.health.base_interval,
            max_interval=cfg.health.max_interval,
            cancel_event=cancel_event,
            sleep=lambda delay: cancel_event.is_set(),
        )

    def build(env=None, **overrides):
        values = dict(env_values)
        values.update(env or {})
        kwargs = dict(
            manager_factory=manager_factory,
            service_factory=stack,
            provisioner_factory=provisioner_factory,
            gate_factory=gate_factory,
            prepare_host=False,
        )
        kwargs.update(overrides)
        return Orchestrator(lambda: dict(values), **kwargs)

    return build
