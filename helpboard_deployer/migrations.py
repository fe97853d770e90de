"""
Idempotent schema and credential bootstrap.

Handles:
- Migration operations that are safe to re-run (create-if-absent,
  add-column-if-absent, upsert by natural key)
- One transaction per migration; the first failure halts the sequence
- Canonical schema/seed digests for comparing repeated runs
- The append-only migration log
- The HelpBoard baseline schema and seed agents
"""

import json
import hashlib
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import DeployConfig, generate_secret, hash_password
from .datastore import Datastore, Transaction
from .errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass
class Column:
    """Portable column definition."""
    name: str
    kind: str = "text"
    nullable: bool = True
    default: Optional[str] = None       # SQL literal, e.g. "'agent'" or "CURRENT_TIMESTAMP"
    unique: bool = False
    primary_key: bool = False
    references: Optional[str] = None    # "table(column)"

    def render(self, store: Datastore) -> str:
        parts = [self.name, store.column_type(self.kind)]
        if self.primary_key and self.kind != "id":
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.unique:
            parts.append("UNIQUE")
        if self.references:
            parts.append(f"REFERENCES {self.references}")
        return " ".join(parts)


class Operation:
    """An idempotent migration operation."""

    @property
    def op_id(self) -> str:
        raise NotImplementedError

    def apply(self, tx: Transaction, store: Datastore):
        raise NotImplementedError


@dataclass
class CreateTable(Operation):
    table: str
    columns: List[Column] = field(default_factory=list)

    @property
    def op_id(self) -> str:
        return f"create_table:{self.table}"

    def apply(self, tx: Transaction, store: Datastore):
        cols = ", ".join(c.render(store) for c in self.columns)
        tx.execute(f"CREATE TABLE IF NOT EXISTS {self.table} ({cols})")


@dataclass
class AddColumn(Operation):
    table: str
    column: Column

    @property
    def op_id(self) -> str:
        return f"add_column:{self.table}.{self.column.name}"

    def apply(self, tx: Transaction, store: Datastore):
        if self.column.name in tx.columns(self.table):
            return
        tx.execute(f"ALTER TABLE {self.table} ADD COLUMN {self.column.render(store)}")


@dataclass
class CreateIndex(Operation):
    name: str
    table: str
    columns: List[str] = field(default_factory=list)
    unique: bool = False

    @property
    def op_id(self) -> str:
        return f"create_index:{self.name}"

    def apply(self, tx: Transaction, store: Datastore):
        unique = "UNIQUE " if self.unique else ""
        tx.execute(
            f"CREATE {unique}INDEX IF NOT EXISTS {self.name} ON {self.table} ({', '.join(self.columns)})"
        )


@dataclass
class UpsertRow(Operation):
    """
    Insert a row or update it in place, keyed by a natural key.

    Columns listed in insert_only are written when the row is first
    created and left alone on conflict.
    """
    table: str
    key: List[str]
    values: Dict[str, Any]
    insert_only: List[str] = field(default_factory=list)

    @property
    def op_id(self) -> str:
        natural = ",".join(str(self.values[k]) for k in self.key)
        return f"upsert:{self.table}[{natural}]"

    @property
    def seeded_columns(self) -> List[str]:
        return [c for c in self.values if c not in self.insert_only]

    def apply(self, tx: Transaction, store: Datastore):
        missing = [k for k in self.key if k not in self.values]
        if missing:
            raise ValueError(f"natural key column(s) {missing} missing from values")

        columns = list(self.values)
        placeholders = ", ".join([tx.placeholder] * len(columns))
        updates = [c for c in columns if c not in self.key and c not in self.insert_only]
        if updates:
            conflict = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
        else:
            conflict = "DO NOTHING"
        tx.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({', '.join(self.key)}) {conflict}",
            [self.values[c] for c in columns],
        )


@dataclass
class Migration:
    """A named group of operations committed together."""
    name: str
    operations: List[Operation] = field(default_factory=list)


@dataclass
class MigrationRecord:
    """Outcome of applying an ordered list of migrations."""
    version: str
    operations: List[str]
    applied_at: datetime
    digest: str
    seeded_rows: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "operations": self.operations,
            "applied_at": self.applied_at.isoformat(),
            "digest": self.digest,
            "seeded_rows": self.seeded_rows,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationRecord":
        return cls(
            version=data["version"],
            operations=list(data.get("operations", [])),
            applied_at=datetime.fromisoformat(data["applied_at"]),
            digest=data["digest"],
            seeded_rows=data.get("seeded_rows", 0),
        )


class MigrationLog:
    """Append-only JSON-lines log; the newest entry per version wins."""

    def __init__(self, path: Path):
        self.path = path

    def append(self, record: MigrationRecord):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")

    def records(self) -> List[MigrationRecord]:
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(MigrationRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping invalid migration log entry: {e}")
        return records

    def latest(self) -> Optional[MigrationRecord]:
        records = self.records()
        return records[-1] if records else None

    def get(self, version: str) -> Optional[MigrationRecord]:
        matches = [r for r in self.records() if r.version == version]
        return matches[-1] if matches else None


class SchemaBootstrapper:
    """Applies migrations and seeds so that repeated runs converge."""

    def __init__(self, datastore: Datastore, log: Optional[MigrationLog] = None):
        self.datastore = datastore
        self.log = log

    def apply(self, migrations: Sequence[Migration]) -> MigrationRecord:
        applied: List[str] = []

        for migration in migrations:
            current = "<begin>"
            try:
                with self.datastore.transaction() as tx:
                    for operation in migration.operations:
                        current = operation.op_id
                        operation.apply(tx, self.datastore)
            except Exception as e:
                logger.error(f"Migration {migration.name} failed at {current}: {e}")
                raise MigrationError(migration.name, current, e) from e

            applied.extend(op.op_id for op in migration.operations)
            logger.info(f"Applied migration {migration.name} ({len(migration.operations)} operation(s))")

        record = MigrationRecord(
            version=migrations[-1].name if migrations else "empty",
            operations=applied,
            applied_at=datetime.now(timezone.utc),
            digest=self.digest(migrations),
            seeded_rows=self.seeded_row_count(migrations),
        )
        if self.log:
            self.log.append(record)
        return record

    @staticmethod
    def _seed_columns(migrations: Sequence[Migration]) -> Dict[str, List[str]]:
        columns: Dict[str, List[str]] = {}
        for migration in migrations:
            for op in migration.operations:
                if isinstance(op, UpsertRow):
                    cols = columns.setdefault(op.table, [])
                    for c in op.seeded_columns:
                        if c not in cols:
                            cols.append(c)
        return {t: sorted(c) for t, c in columns.items()}

    def digest(self, migrations: Sequence[Migration]) -> str:
        """SHA-256 over the schema and the seeded columns of seeded tables."""
        canonical = {
            "schema": self.datastore.describe(),
            "seeds": {
                table: self.datastore.fetch_rows(table, cols)
                for table, cols in self._seed_columns(migrations).items()
            },
        }
        payload = json.dumps(canonical, sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()

    def seeded_row_count(self, migrations: Sequence[Migration]) -> int:
        total = 0
        with self.datastore.transaction() as tx:
            for table in self._seed_columns(migrations):
                total += tx.fetchall(f"SELECT COUNT(*) FROM {table}")[0][0]
        return total


def _ts(name: str) -> Column:
    return Column(name, "timestamp", default="CURRENT_TIMESTAMP")


def _seed_agent(
    config: DeployConfig,
    email: str,
    name: str,
    role: str,
    department: str,
    phone: str,
    password: Optional[str],
) -> UpsertRow:
    insert_only = []
    if password is None:
        # Unconfigured credentials: set once, never rotated by reruns
        password = generate_secret(24)
        insert_only = ["password"]
    return UpsertRow(
        table="agents",
        key=["email"],
        values={
            "email": email,
            "name": name,
            "password": hash_password(password, f"{config.session_secret}:{email}"),
            "role": role,
            "is_active": True,
            "department": department,
            "phone": phone,
        },
        insert_only=insert_only,
    )


def helpboard_migrations(config: DeployConfig) -> List[Migration]:
    """Baseline schema and seed data for the HelpBoard application."""
    return [
        Migration("0001_core_tables", [
            CreateTable("agents", [
                Column("id", "id"),
                Column("email", nullable=False, unique=True),
                Column("name", nullable=False),
                Column("password", nullable=False),
                Column("is_available", "boolean", default="TRUE"),
                _ts("created_at"),
                _ts("updated_at"),
            ]),
            CreateTable("customers", [
                Column("id", "id"),
                Column("session_id", nullable=False, unique=True),
                Column("name"),
                Column("email"),
                Column("phone"),
                Column("address"),
                Column("country"),
                Column("ip_address"),
                Column("user_agent"),
                Column("timezone"),
                Column("language"),
                Column("platform"),
                Column("page_url"),
                Column("page_title"),
                Column("referrer"),
                Column("is_identified", "boolean", default="FALSE"),
                _ts("last_seen"),
                _ts("created_at"),
            ]),
            CreateTable("conversations", [
                Column("id", "id"),
                Column("customer_id", "integer", nullable=False, references="customers(id)"),
                Column("assigned_agent_id", "integer", references="agents(id)"),
                Column("status", nullable=False, default="'open'"),
                Column("last_agent_intervention_at", "timestamp"),
                _ts("created_at"),
                _ts("updated_at"),
            ]),
            CreateTable("messages", [
                Column("id", "id"),
                Column("conversation_id", "integer", nullable=False, references="conversations(id)"),
                Column("sender_id", "integer"),
                Column("sender_type", nullable=False),
                Column("content", nullable=False),
                _ts("created_at"),
            ]),
            CreateTable("sessions", [
                Column("id", "text", primary_key=True),
                Column("agent_id", "integer", references="agents(id)"),
                Column("customer_id", "integer", references="customers(id)"),
                Column("data", "json"),
                Column("expires_at", "timestamp"),
                _ts("created_at"),
            ]),
        ]),
        # Agent profile columns were added to live installs after launch
        Migration("0002_agent_profile_columns", [
            AddColumn("agents", Column("role", nullable=False, default="'agent'")),
            AddColumn("agents", Column("is_active", "boolean", default="TRUE")),
            AddColumn("agents", Column("department")),
            AddColumn("agents", Column("phone")),
            AddColumn("agents", Column("avatar")),
            AddColumn("agents", Column("password_changed_at", "timestamp")),
            AddColumn("agents", Column("last_login_at", "timestamp")),
        ]),
        Migration("0003_indexes", [
            CreateIndex("idx_conversations_status", "conversations", ["status"]),
            CreateIndex("idx_conversations_customer", "conversations", ["customer_id"]),
            CreateIndex("idx_messages_conversation", "messages", ["conversation_id"]),
        ]),
        Migration("0004_seed_agents", [
            _seed_agent(config, "admin@helpboard.com", "System Administrator", "admin",
                        "Administration", "+1-555-0100", config.admin_password),
            _seed_agent(config, "agent@helpboard.com", "Support Agent", "agent",
                        "Customer Support", "+1-555-0200", config.agent_password),
        ]),
    ]
