"""
Datastore access for schema bootstrap and backups.

Handles:
- Per-step transactions for migrations
- Catalog introspection (tables, columns) for idempotent DDL
- Point-in-time dumps and all-or-nothing restores

PostgreSQL is the production datastore (psycopg2 for statements,
pg_dump/psql inside the db container for dumps). SQLite backs local
single-host installs and the test suite.
"""

import os
import sqlite3
import subprocess
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Dict, List, Any, Callable, Iterator, Sequence, Tuple

import psycopg2

from .config import DatastoreConfig
from .errors import DatastoreError

logger = logging.getLogger(__name__)


_SEQUENCE_STATEMENTS = ('DELETE FROM "sqlite_sequence"', 'INSERT INTO "sqlite_sequence"')

# pg_dump --clean only drops objects that existed at dump time, so the
# restore starts from an empty public schema in the same transaction
RESET_PUBLIC_SCHEMA = "DROP SCHEMA IF EXISTS public CASCADE;\nCREATE SCHEMA public;\n"


class Transaction:
    """A DB-API cursor bound to one open transaction."""

    def __init__(self, cursor, placeholder: str, columns_sql: str):
        self._cursor = cursor
        self.placeholder = placeholder
        self._columns_sql = columns_sql

    def execute(self, sql: str, params: Sequence[Any] = ()):
        self._cursor.execute(sql, tuple(params))

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple]:
        self._cursor.execute(sql, tuple(params))
        return list(self._cursor.fetchall())

    def columns(self, table: str) -> List[str]:
        rows = self.fetchall(self._columns_sql.format(table=table, p=self.placeholder), (table,))
        return [r[0] for r in rows]


class Datastore:
    """Interface shared by the concrete datastores."""

    placeholder = "?"
    type_map: Dict[str, str] = {}

    def column_type(self, kind: str) -> str:
        if kind not in self.type_map:
            raise ValueError(f"Unknown column type: {kind}")
        return self.type_map[kind]

    def available(self) -> bool:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        raise NotImplementedError
        yield

    def describe(self) -> Dict[str, List[Tuple[str, str]]]:
        """Table name -> sorted (column, type) pairs."""
        raise NotImplementedError

    def fetch_rows(self, table: str, columns: Sequence[str]) -> List[Tuple]:
        cols = ", ".join(columns)
        with self.transaction() as tx:
            return tx.fetchall(f"SELECT {cols} FROM {table} ORDER BY {cols}")

    def dump(self) -> str:
        raise NotImplementedError

    def restore(self, dump: str):
        """Replace the store's contents with dump, or leave it untouched on failure."""
        raise NotImplementedError


class SQLiteDatastore(Datastore):
    """Single-file datastore."""

    placeholder = "?"
    type_map = {
        "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "text": "TEXT",
        "integer": "INTEGER",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        "json": "TEXT",
    }

    def __init__(self, path: Path):
        self.path = Path(path)

    def _connect(self, path: Optional[Path] = None) -> sqlite3.Connection:
        target = path or self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        # Manual transaction control so DDL is transactional too
        return sqlite3.connect(str(target), isolation_level=None)

    def available(self) -> bool:
        try:
            conn = self._connect()
            conn.execute("SELECT 1")
            conn.close()
            return True
        except sqlite3.Error:
            return False

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        conn = self._connect()
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield Transaction(cursor, self.placeholder, "SELECT name FROM pragma_table_info({p}) ORDER BY cid")
            cursor.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def describe(self) -> Dict[str, List[Tuple[str, str]]]:
        conn = self._connect()
        try:
            tables = [
                r[0] for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' "
                    "AND name NOT LIKE 'sqlite_%' ORDER BY name"
                )
            ]
            schema = {}
            for table in tables:
                cols = conn.execute("SELECT name, type FROM pragma_table_info(?)", (table,)).fetchall()
                schema[table] = sorted((c[0], c[1].upper()) for c in cols)
            return schema
        finally:
            conn.close()

    def dump(self) -> str:
        if not self.path.exists():
            return ""
        conn = self._connect()
        try:
            lines = list(conn.iterdump())
        finally:
            conn.close()

        # sqlite_sequence only exists once an AUTOINCREMENT table has been
        # created, so its rows must replay after every CREATE TABLE
        sequence = [line for line in lines if line.startswith(_SEQUENCE_STATEMENTS)]
        body = [line for line in lines if not line.startswith(_SEQUENCE_STATEMENTS)]
        if body and body[-1] == "COMMIT;":
            body[-1:] = sequence + ["COMMIT;"]
        else:
            body += sequence
        return "\n".join(body) + "\n"

    def restore(self, dump: str):
        staging = self.path.with_name(self.path.name + ".restore")
        if staging.exists():
            staging.unlink()
        try:
            conn = self._connect(staging)
            try:
                conn.executescript(dump)
            finally:
                conn.close()
        except sqlite3.Error as e:
            if staging.exists():
                staging.unlink()
            raise DatastoreError(f"SQLite restore failed: {e}")
        os.replace(staging, self.path)
        logger.info(f"Restored SQLite datastore: {self.path}")


class PostgresDatastore(Datastore):
    """PostgreSQL reached over the network by psycopg2."""

    placeholder = "%s"
    type_map = {
        "id": "SERIAL PRIMARY KEY",
        "text": "TEXT",
        "integer": "INTEGER",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        "json": "JSONB",
    }

    def __init__(
        self,
        config: DatastoreConfig,
        command_prefix: Optional[Callable[[List[str]], List[str]]] = None,
        connect_timeout: int = 5,
    ):
        self.config = config
        # Wraps pg_dump/psql so they run inside the db container
        self.command_prefix = command_prefix or (lambda cmd: cmd)
        self.connect_timeout = connect_timeout

    def _connect(self):
        kwargs: Dict[str, Any] = {"connect_timeout": self.connect_timeout}
        if self.config.password:
            kwargs["password"] = self.config.password
        try:
            return psycopg2.connect(self.config.host_url, **kwargs)
        except psycopg2.OperationalError as e:
            raise DatastoreError(f"Cannot connect to {self.config.safe_url}: {e}")

    def available(self) -> bool:
        try:
            conn = self._connect()
        except DatastoreError:
            return False
        conn.close()
        return True

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        conn = self._connect()
        try:
            # psycopg2: leaving the block commits, an exception rolls back
            with conn:
                with conn.cursor() as cursor:
                    yield Transaction(
                        cursor,
                        self.placeholder,
                        "SELECT column_name FROM information_schema.columns "
                        "WHERE table_schema = 'public' AND table_name = {p} ORDER BY ordinal_position",
                    )
        finally:
            conn.close()

    def describe(self) -> Dict[str, List[Tuple[str, str]]]:
        with self.transaction() as tx:
            rows = tx.fetchall(
                "SELECT table_name, column_name, data_type FROM information_schema.columns "
                "WHERE table_schema = 'public' ORDER BY table_name, column_name"
            )
        schema: Dict[str, List[Tuple[str, str]]] = {}
        for table, column, data_type in rows:
            schema.setdefault(table, []).append((column, data_type.upper()))
        return {t: sorted(cols) for t, cols in schema.items()}

    def _pg_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.password:
            env["PGPASSWORD"] = self.config.password
        return env

    def dump(self) -> str:
        cmd = self.command_prefix([
            "pg_dump", "-U", self.config.user, "-d", self.config.database,
            "--clean", "--if-exists", "--no-owner"
        ])
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, env=self._pg_env())
        except FileNotFoundError as e:
            raise DatastoreError(f"pg_dump not available: {e}")
        if result.returncode != 0:
            raise DatastoreError(f"pg_dump failed: {result.stderr.strip()}")
        return result.stdout

    def restore(self, dump: str):
        # --single-transaction with ON_ERROR_STOP leaves the database untouched on any error
        cmd = self.command_prefix([
            "psql", "-U", self.config.user, "-d", self.config.database,
            "-v", "ON_ERROR_STOP=1", "--single-transaction", "-q"
        ])
        try:
            result = subprocess.run(
                cmd, input=RESET_PUBLIC_SCHEMA + dump, capture_output=True, text=True, env=self._pg_env()
            )
        except FileNotFoundError as e:
            raise DatastoreError(f"psql not available: {e}")
        if result.returncode != 0:
            raise DatastoreError(f"psql restore failed: {result.stderr.strip()}")
        logger.info(f"Restored PostgreSQL database: {self.config.database}")


def create_datastore(
    config: DatastoreConfig,
    command_prefix: Optional[Callable[[List[str]], List[str]]] = None,
) -> Datastore:
    """Pick the datastore implementation from the connection URL scheme."""
    if config.is_sqlite:
        return SQLiteDatastore(config.sqlite_path)
    return PostgresDatastore(config, command_prefix=command_prefix)
