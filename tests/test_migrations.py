"""Test idempotent schema and seed bootstrap."""

import sqlite3

import bcrypt
import pytest

from helpboard_deployer.errors import MigrationError
from helpboard_deployer.migrations import (
    AddColumn,
    Column,
    CreateIndex,
    CreateTable,
    Migration,
    MigrationLog,
    SchemaBootstrapper,
    UpsertRow,
    helpboard_migrations,
)


@pytest.fixture
def log(config):
    return MigrationLog(config.migration_log_path)


@pytest.fixture
def bootstrapper(datastore, log):
    return SchemaBootstrapper(datastore, log)


def agents(datastore):
    with datastore.transaction() as tx:
        return tx.fetchall("SELECT email, role, password FROM agents ORDER BY email")


class TestHelpboardMigrations:
    """Test the baseline schema and seed agents."""

    def test_fresh_install(self, bootstrapper, datastore, config):
        record = bootstrapper.apply(helpboard_migrations(config))

        schema = datastore.describe()
        assert {"agents", "customers", "conversations", "messages", "sessions"} <= set(schema)
        assert "data" in dict(schema["sessions"])
        assert record.version == "0004_seed_agents"
        assert record.seeded_rows == 2
        assert [row[0] for row in agents(datastore)] == ["admin@helpboard.com", "agent@helpboard.com"]

    def test_rerun_converges(self, bootstrapper, datastore, config):
        first = bootstrapper.apply(helpboard_migrations(config))
        second = bootstrapper.apply(helpboard_migrations(config))

        assert second.digest == first.digest
        assert second.seeded_rows == first.seeded_rows == 2

    def test_unconfigured_password_not_rotated(self, bootstrapper, datastore, config):
        bootstrapper.apply(helpboard_migrations(config))
        before = agents(datastore)

        bootstrapper.apply(helpboard_migrations(config))

        assert agents(datastore) == before

    def test_configured_password_is_refreshed(self, bootstrapper, datastore, config):
        config.admin_password = "first-password"
        bootstrapper.apply(helpboard_migrations(config))
        before = dict((row[0], row[2]) for row in agents(datastore))

        config.admin_password = "second-password"
        record = bootstrapper.apply(helpboard_migrations(config))

        after = dict((row[0], row[2]) for row in agents(datastore))
        assert after["admin@helpboard.com"] != before["admin@helpboard.com"]
        assert after["agent@helpboard.com"] == before["agent@helpboard.com"]
        assert record.seeded_rows == 2
        assert bcrypt.checkpw(b"second-password", after["admin@helpboard.com"].encode())
        assert not bcrypt.checkpw(b"first-password", after["admin@helpboard.com"].encode())

    def test_configured_password_converges(self, bootstrapper, datastore, config):
        config.admin_password = "first-password"
        first = bootstrapper.apply(helpboard_migrations(config))
        before = agents(datastore)

        second = bootstrapper.apply(helpboard_migrations(config))

        assert agents(datastore) == before
        assert second.digest == first.digest

    def test_legacy_agents_table_gets_new_columns(self, bootstrapper, datastore, config):
        conn = sqlite3.connect(str(datastore.path))
        conn.execute(
            "CREATE TABLE agents (id INTEGER PRIMARY KEY AUTOINCREMENT, email TEXT NOT NULL UNIQUE, "
            "name TEXT NOT NULL, password TEXT NOT NULL)"
        )
        conn.execute("INSERT INTO agents (email, name, password) VALUES ('legacy@helpboard.com', 'Legacy', 'x')")
        conn.commit()
        conn.close()

        bootstrapper.apply(helpboard_migrations(config))

        columns = dict(datastore.describe()["agents"])
        assert {"role", "is_active", "department", "phone"} <= set(columns)
        rows = agents(datastore)
        assert ("legacy@helpboard.com", "agent", "x") in rows
        assert len(rows) == 3

    def test_log_records_each_run(self, bootstrapper, log, config):
        bootstrapper.apply(helpboard_migrations(config))
        bootstrapper.apply(helpboard_migrations(config))

        assert len(log.records()) == 2
        assert log.latest().version == "0004_seed_agents"
        assert log.get("0004_seed_agents").seeded_rows == 2
        assert log.get("9999_missing") is None


class TestFailures:
    """Test that the first failure halts the sequence."""

    def test_failed_migration_halts_and_rolls_back_its_own_steps(self, bootstrapper, datastore, log):
        migrations = [
            Migration("0001_ok", [CreateTable("kept", [Column("id", "id")])]),
            Migration("0002_broken", [
                CreateTable("half", [Column("id", "id")]),
                CreateIndex("idx_missing", "no_such_table", ["id"]),
            ]),
            Migration("0003_never", [CreateTable("never", [Column("id", "id")])]),
        ]

        with pytest.raises(MigrationError) as exc:
            bootstrapper.apply(migrations)

        assert exc.value.step == "0002_broken"
        assert exc.value.operation == "create_index:idx_missing"
        schema = datastore.describe()
        assert "kept" in schema
        assert "half" not in schema
        assert "never" not in schema
        assert log.records() == []

    def test_upsert_requires_natural_key(self, bootstrapper):
        migrations = [
            Migration("0001", [CreateTable("things", [Column("name", unique=True)])]),
            Migration("0002", [UpsertRow("things", key=["name"], values={"other": 1})]),
        ]

        with pytest.raises(MigrationError) as exc:
            bootstrapper.apply(migrations)

        assert exc.value.step == "0002"


class TestOperations:
    """Test individual operations."""

    def test_add_column_is_idempotent(self, bootstrapper, datastore):
        migrations = [
            Migration("0001", [CreateTable("notes", [Column("id", "id")])]),
            Migration("0002", [AddColumn("notes", Column("body"))]),
        ]

        bootstrapper.apply(migrations)
        bootstrapper.apply(migrations)

        assert [c for c, _ in datastore.describe()["notes"]] == ["body", "id"]

    def test_upsert_updates_in_place(self, bootstrapper, datastore):
        table = CreateTable("settings", [Column("name", unique=True), Column("value")])
        bootstrapper.apply([Migration("0001", [table, UpsertRow("settings", ["name"], {"name": "k", "value": "1"})])])
        bootstrapper.apply([Migration("0001", [table, UpsertRow("settings", ["name"], {"name": "k", "value": "2"})])])

        with datastore.transaction() as tx:
            assert tx.fetchall("SELECT name, value FROM settings") == [("k", "2")]
