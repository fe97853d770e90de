#!/usr/bin/env python3
"""
HelpBoard Deployer - Command Line Interface

Single-host deployment for the HelpBoard stack (PostgreSQL, Redis, the
application and an Nginx reverse proxy).

Usage:
    python -m helpboard_deployer validate
    python -m helpboard_deployer deploy [--no-backup] [-y]
    python -m helpboard_deployer status [--json]
    python -m helpboard_deployer rollback [--snapshot ID]
    python -m helpboard_deployer backup [--label LABEL] [--list] [--prune]
    python -m helpboard_deployer renew-certificate [--force]
"""

import argparse
import json
import signal
import sys
import logging
from pathlib import Path
from typing import Optional, List

from rich.console import Console
from rich.table import Table

from .config import describe_errors, load_environment
from .core import DeploymentOutcome, Orchestrator, Outcome
from .errors import CyclicDependencyError, DeployerError, RollbackError, ValidationError
from .state import PhaseState


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLED_BACK = 3
EXIT_INVALID_CONFIG = 4
EXIT_ROLLBACK_FAILED = 5
EXIT_CYCLIC_GRAPH = 6

STATE_STYLES = {
    PhaseState.HEALTHY: "green",
    PhaseState.DEGRADED: "yellow",
    PhaseState.RUNNING: "cyan",
    PhaseState.PENDING: "dim",
    PhaseState.FAILED: "red",
}


def build_orchestrator(args) -> Orchestrator:
    """Orchestrator reading .env, the optional tuning file and the environment."""
    env_file = Path(args.env_file)
    tuning_file = Path(args.config) if args.config else None

    def env_loader():
        values = load_environment(env_file=env_file, tuning_file=tuning_file)
        if args.deploy_dir:
            values["DEPLOY_DIR"] = args.deploy_dir
        return values

    return Orchestrator(env_loader, env_file=env_file)


def print_validation_error(error: ValidationError):
    print("❌ Invalid configuration:")
    for line in describe_errors(error):
        print(f"   - {line}")


def outcome_exit_code(outcome: DeploymentOutcome) -> int:
    if outcome.success:
        return EXIT_OK
    if outcome.outcome == Outcome.ROLLED_BACK:
        return EXIT_ROLLED_BACK
    if isinstance(outcome.exception, ValidationError):
        return EXIT_INVALID_CONFIG
    if isinstance(outcome.exception, CyclicDependencyError):
        return EXIT_CYCLIC_GRAPH
    if outcome.rollback_error:
        return EXIT_ROLLBACK_FAILED
    return EXIT_FAILED


def cmd_validate(args):
    """Handle validate command."""
    config = build_orchestrator(args).validate()
    print("✅ Configuration is valid")
    table = Table(show_header=False)
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    Console().print(table)


def cmd_deploy(args):
    """Handle deploy command."""
    orchestrator = build_orchestrator(args)

    print("🔧 Validating configuration...\n")
    config = orchestrator.validate()

    print("📋 Configuration Summary:")
    print(f"   Domain:     {config.domain}")
    print(f"   Datastore:  {config.datastore.safe_url}")
    print(f"   Ports:      app {config.app_port}, proxy {config.proxy_http_port}/{config.proxy_https_port}")
    print(f"   Deploy dir: {config.deploy_dir}")
    print(f"   Snapshots:  {'off' if args.no_backup else 'on' if config.backup_before_deploy else 'off'}")
    print()

    if not args.yes:
        response = input("Continue with deployment? [y/N] ")
        if response.lower() != "y":
            print("Deployment cancelled.")
            return EXIT_OK

    def progress(msg):
        print(f"   {msg}")

    def handle_signal(signum, frame):
        print("\n⚠️  Cancelling deployment...")
        orchestrator.cancel()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        print("🚀 Starting deployment...")
        outcome = orchestrator.deploy(
            progress_callback=progress,
            take_snapshots=False if args.no_backup else None,
        )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print()
    if outcome.success:
        icon = "✅" if outcome.outcome == Outcome.SUCCESS else "⚠️ "
        print(f"{icon} Deployment completed in {outcome.duration_seconds:.1f}s")
    elif outcome.outcome == Outcome.ROLLED_BACK:
        print("↩️  Deployment failed and was rolled back")
    else:
        print("❌ Deployment failed")
    for line in outcome.summary():
        print(f"   {line}")

    if isinstance(outcome.exception, ValidationError):
        print_validation_error(outcome.exception)
    return outcome_exit_code(outcome)


def cmd_status(args):
    """Handle status command."""
    report = build_orchestrator(args).status()

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return EXIT_OK

    table = Table(title="HelpBoard services")
    table.add_column("Service")
    table.add_column("State")
    for name, state in report.services.items():
        style = STATE_STYLES.get(state, "")
        table.add_row(name, f"[{style}]{state.value}[/{style}]" if style else state.value)

    console = Console()
    console.print(table)
    console.print(f"Run state: {report.run_state.value}  Outcome: {report.outcome or '-'}")
    if report.failing_phase:
        console.print(f"Failing phase: {report.failing_phase}  Error: {report.error}")
    if report.restored_snapshot:
        console.print(f"Restored snapshot: {report.restored_snapshot}")
    if report.certificate:
        cert = report.certificate
        console.print(
            f"Certificate: {cert['strategy']} for {cert['domain']}, "
            f"expires {cert['expires_at'][:10]} ({cert['days_remaining']} days)"
        )
    else:
        console.print("Certificate: none installed")
    console.print(f"Schema version: {report.migration_version or '-'}")
    return EXIT_OK


def cmd_rollback(args):
    """Handle rollback command."""
    orchestrator = build_orchestrator(args)
    print(f"⚠️  Rolling back to {args.snapshot or 'the latest snapshot'}...")
    result = orchestrator.rollback(args.snapshot)
    print(f"✅ Restored snapshot {result.snapshot_id}")
    if result.services_failed:
        print(f"⚠️  Services not restarted: {', '.join(result.services_failed)}")
        return EXIT_FAILED
    return EXIT_OK


def cmd_backup(args):
    """Handle backup command."""
    orchestrator = build_orchestrator(args)

    if args.list:
        snapshots = orchestrator.list_backups()
        if not snapshots:
            print("No backups found.")
            return EXIT_OK
        table = Table(title="Snapshots")
        for column in ("ID", "Label", "Created", "Size", "Database", "Restored"):
            table.add_column(column)
        for snapshot in snapshots:
            table.add_row(
                snapshot.id,
                snapshot.label,
                snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                snapshot._human_size(snapshot.size_bytes),
                "yes" if snapshot.database_dump else "no",
                snapshot.restored_at.strftime("%Y-%m-%d %H:%M") if snapshot.restored_at else "",
            )
        Console().print(table)
        return EXIT_OK

    if args.prune:
        pruned = orchestrator.prune_backups()
        print(f"🧹 Pruned {len(pruned)} snapshot(s)")
        for snapshot_id in pruned:
            print(f"   - {snapshot_id}")
        return EXIT_OK

    print(f"📦 Creating snapshot '{args.label}'...")
    snapshot = orchestrator.backup(args.label)
    print(f"✅ Snapshot created: {snapshot.id}")
    print(f"   Path: {snapshot.path}")
    print(f"   Size: {snapshot._human_size(snapshot.size_bytes)}")
    return EXIT_OK


def cmd_renew_certificate(args):
    """Handle renew-certificate command."""
    record, renewed = build_orchestrator(args).renew_certificate(force=args.force)
    if renewed:
        print(f"🔐 Certificate renewed ({record.strategy.value})")
    else:
        print("🔐 Certificate is current")
    print(f"   Domain:  {record.domain}")
    print(f"   Expires: {record.expires_at:%Y-%m-%d} ({record.days_remaining():.0f} days)")
    return EXIT_OK


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="HelpBoard Deployer - single-host deployment with TLS, migrations and rollback"
    )
    parser.add_argument("--env-file", default=".env", help="Environment file (default: .env)")
    parser.add_argument("--config", help="Optional YAML tuning file")
    parser.add_argument("--deploy-dir", help="Override DEPLOY_DIR")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("validate", help="Validate configuration only")

    deploy_parser = subparsers.add_parser("deploy", help="Run the full deployment")
    deploy_parser.add_argument("--no-backup", action="store_true", help="Skip snapshots for this run")
    deploy_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation")

    status_parser = subparsers.add_parser("status", help="Show deployment status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    rollback_parser = subparsers.add_parser("rollback", help="Restore a snapshot")
    rollback_parser.add_argument("--snapshot", help="Snapshot ID (default: latest)")

    backup_parser = subparsers.add_parser("backup", help="Snapshot management")
    backup_parser.add_argument("--label", default="manual", help="Snapshot label")
    backup_parser.add_argument("--list", action="store_true", help="List snapshots")
    backup_parser.add_argument("--prune", action="store_true", help="Apply the retention window")

    renew_parser = subparsers.add_parser("renew-certificate", help="Renew the TLS certificate")
    renew_parser.add_argument("--force", action="store_true", help="Renew even if not due")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    commands = {
        "validate": cmd_validate,
        "deploy": cmd_deploy,
        "status": cmd_status,
        "rollback": cmd_rollback,
        "backup": cmd_backup,
        "renew-certificate": cmd_renew_certificate,
    }

    handler = commands.get(args.command)
    try:
        return handler(args) or EXIT_OK
    except ValidationError as e:
        print_validation_error(e)
        return EXIT_INVALID_CONFIG
    except CyclicDependencyError as e:
        print(f"❌ {e}")
        return EXIT_CYCLIC_GRAPH
    except RollbackError as e:
        print(f"🚨 ROLLBACK FAILED: {e}")
        return EXIT_ROLLBACK_FAILED
    except DeployerError as e:
        print(f"❌ {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
