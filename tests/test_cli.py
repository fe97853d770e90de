"""Test the command line interface and its exit codes."""

import argparse
import json

import pytest

import helpboard_deployer.__main__ as cli
from helpboard_deployer.backup import BackupManager
from helpboard_deployer.config import KNOWN_KEYS
from helpboard_deployer.errors import RollbackError
from helpboard_deployer.graph import ServiceSpec

from .test_core import NO_BACKUP, broken_migrations


@pytest.fixture
def use_orchestrator(monkeypatch):
    """Route every command to the given orchestrator."""

    def install(orchestrator):
        monkeypatch.setattr(cli, "build_orchestrator", lambda args: orchestrator)
        return orchestrator

    return install


@pytest.fixture
def clean_environ(monkeypatch):
    for key in KNOWN_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestValidate:
    """Test the validate command with real environment loading."""

    def test_valid_env_file(self, tmp_path, env_values, clean_environ, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("".join(f"{key}={value}\n" for key, value in env_values.items()))

        code = cli.main(["--env-file", str(env_file), "validate"])

        assert code == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "Configuration is valid" in out
        assert env_values["SESSION_SECRET"] not in out

    def test_invalid_env_file_lists_every_key(self, tmp_path, clean_environ, capsys):
        env_file = tmp_path / ".env"
        env_file.write_text("DOMAIN=helpboard.example.com\nSESSION_SECRET=short\n")

        code = cli.main(["--env-file", str(env_file), "validate"])

        assert code == cli.EXIT_INVALID_CONFIG
        out = capsys.readouterr().out
        for key in ("DATABASE_URL", "PGPASSWORD", "OPENAI_API_KEY", "SESSION_SECRET"):
            assert key in out

    def test_deploy_dir_override(self, tmp_path, env_values, clean_environ):
        env_file = tmp_path / ".env"
        env_file.write_text("".join(f"{key}={value}\n" for key, value in env_values.items()))
        args = argparse.Namespace(env_file=str(env_file), config=None, deploy_dir=str(tmp_path / "elsewhere"))

        config = cli.build_orchestrator(args).validate()

        assert config.deploy_dir == tmp_path / "elsewhere"
        assert config.env_file == env_file


class TestDeploy:
    """Test deploy exit codes."""

    def test_success(self, make_orchestrator, use_orchestrator, capsys):
        use_orchestrator(make_orchestrator())

        assert cli.main(["deploy", "-y"]) == cli.EXIT_OK
        assert "Deployment completed" in capsys.readouterr().out

    def test_fallback_certificate_still_succeeds(self, make_orchestrator, use_orchestrator, resolver):
        resolver.result = False
        use_orchestrator(make_orchestrator())

        assert cli.main(["deploy", "-y"]) == cli.EXIT_OK

    def test_rolled_back(self, make_orchestrator, use_orchestrator, capsys):
        use_orchestrator(make_orchestrator(migrations_factory=broken_migrations))

        assert cli.main(["deploy", "-y"]) == cli.EXIT_ROLLED_BACK
        assert "rolled back" in capsys.readouterr().out

    def test_failed_without_snapshot(self, make_orchestrator, use_orchestrator):
        use_orchestrator(make_orchestrator(migrations_factory=broken_migrations))

        assert cli.main(["deploy", "-y", "--no-backup"]) == cli.EXIT_FAILED

    def test_rollback_failure(self, make_orchestrator, use_orchestrator, monkeypatch, capsys):
        def broken_restore(self, snapshot):
            raise RollbackError(snapshot.id, "artifact unreadable")

        monkeypatch.setattr(BackupManager, "restore", broken_restore)
        use_orchestrator(make_orchestrator(migrations_factory=broken_migrations))

        assert cli.main(["deploy", "-y"]) == cli.EXIT_ROLLBACK_FAILED
        assert "ROLLBACK FAILED" in capsys.readouterr().out

    def test_invalid_configuration(self, make_orchestrator, use_orchestrator, stack):
        use_orchestrator(make_orchestrator(env={"OPENAI_API_KEY": "your_openai_api_key_here"}))

        assert cli.main(["deploy", "-y"]) == cli.EXIT_INVALID_CONFIG
        assert stack.started == []

    def test_cyclic_graph(self, make_orchestrator, use_orchestrator):
        def factory(config, manager, before_proxy_start=None):
            return [ServiceSpec(name="a", depends_on=["b"]), ServiceSpec(name="b", depends_on=["a"])]

        use_orchestrator(make_orchestrator(env=NO_BACKUP, service_factory=factory))

        assert cli.main(["deploy", "-y"]) == cli.EXIT_CYCLIC_GRAPH

    def test_declined_confirmation(self, make_orchestrator, use_orchestrator, stack, monkeypatch):
        use_orchestrator(make_orchestrator())
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        assert cli.main(["deploy"]) == cli.EXIT_OK
        assert stack.started == []


class TestOperatorCommands:
    """Test status, backup, rollback and renew-certificate."""

    def test_status_json(self, make_orchestrator, use_orchestrator, capsys):
        orchestrator = use_orchestrator(make_orchestrator())
        orchestrator.deploy()
        capsys.readouterr()

        assert cli.main(["status", "--json"]) == cli.EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["run_state"] == "done"
        assert report["services"]["nginx"] == "healthy"
        assert report["certificate"]["strategy"] == "primary"

    def test_status_table(self, make_orchestrator, use_orchestrator, capsys):
        use_orchestrator(make_orchestrator())

        assert cli.main(["status"]) == cli.EXIT_OK
        assert "Certificate: none installed" in capsys.readouterr().out

    def test_backup_list_and_prune(self, make_orchestrator, use_orchestrator, capsys):
        use_orchestrator(make_orchestrator())

        assert cli.main(["backup", "--label", "nightly"]) == cli.EXIT_OK
        assert cli.main(["backup", "--list"]) == cli.EXIT_OK
        assert "nightly" in capsys.readouterr().out
        assert cli.main(["backup", "--prune"]) == cli.EXIT_OK
        assert "Pruned 0 snapshot(s)" in capsys.readouterr().out

    def test_rollback_without_snapshot(self, make_orchestrator, use_orchestrator, config):
        use_orchestrator(make_orchestrator())

        assert cli.main(["rollback"]) == cli.EXIT_ROLLBACK_FAILED

    def test_rollback(self, make_orchestrator, use_orchestrator, capsys):
        orchestrator = use_orchestrator(make_orchestrator())
        orchestrator.deploy()

        assert cli.main(["rollback"]) == cli.EXIT_OK
        assert "Restored snapshot" in capsys.readouterr().out

    def test_renew_certificate(self, make_orchestrator, use_orchestrator, capsys):
        use_orchestrator(make_orchestrator())

        assert cli.main(["renew-certificate"]) == cli.EXIT_OK
        assert "Certificate renewed (primary)" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert cli.main([]) == cli.EXIT_FAILED
