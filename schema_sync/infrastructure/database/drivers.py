"""Database drivers: connection, raw execution, transactions and backups."""
import logging
import sqlite3
import subprocess
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Sequence

import psycopg2

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.exceptions import BackupFailed, ConfigurationError
from schema_sync.domain.repositories.interfaces import IDatabaseDriver

logger = logging.getLogger(__name__)


class SqliteDriver(IDatabaseDriver):
    """
    SQLite driver on the standard library module.

    The connection runs in autocommit mode and transactions are explicit
    BEGIN/COMMIT, so DDL participates in them. Foreign key enforcement is
    left off, which table rebuilds rely on.
    """

    def __init__(self, database: str = ":memory:", backup_directory: str = "./backups"):
        self._database = database
        self._backup_dir = Path(backup_directory)
        self._conn = sqlite3.connect(database, isolation_level=None, check_same_thread=False)
        self._in_transaction = False
        logger.info(f"[SqliteDriver] Connected to {database}")

    @property
    def dialect(self) -> Dialect:
        return Dialect.SQLITE

    @property
    def placeholder(self) -> str:
        return "?"

    @property
    def error_types(self):
        return (sqlite3.Error,)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._conn.execute(sql, tuple(params)).rowcount

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        return self._conn.execute(sql, tuple(params)).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return
        self._conn.execute("BEGIN")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            # SQLite may already have ended the transaction on BUSY, FULL or IOERR
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    def backup(self, label: str) -> str:
        """Copy the database through the online backup API."""
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        stem = "memory" if self._database == ":memory:" else Path(self._database).stem
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self._backup_dir / f"{stem}_{label}_{timestamp}.sqlite3"
        logger.info(f"[SqliteDriver] Creating backup: {self._database} -> {path}")
        target = sqlite3.connect(str(path))
        try:
            self._conn.backup(target)
        finally:
            target.close()
        if not path.exists() or path.stat().st_size == 0:
            raise BackupFailed(f"Backup verification failed: {path}")
        return str(path)

    def close(self) -> None:
        self._conn.close()


class PostgresDriver(IDatabaseDriver):
    """PostgreSQL driver on psycopg2; backups go through ``pg_dump``."""

    def __init__(self, dsn: str, backup_directory: str = "./backups", pg_dump: str = "pg_dump"):
        self._dsn = dsn
        self._backup_dir = Path(backup_directory)
        self._pg_dump = pg_dump
        self._conn = psycopg2.connect(dsn)
        self._conn.autocommit = True
        self._in_transaction = False
        logger.info("[PostgresDriver] Connected")

    @property
    def dialect(self) -> Dialect:
        return Dialect.POSTGRES

    @property
    def placeholder(self) -> str:
        return "%s"

    @property
    def error_types(self):
        return (psycopg2.Error,)

    @property
    def dsn(self) -> str:
        return self._dsn

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._conn.cursor() as cur:
            cur.execute(sql, tuple(params) or None)
            return cur.rowcount

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._conn.cursor() as cur:
            cur.execute(sql, tuple(params) or None)
            return cur.fetchall()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._in_transaction:
            yield
            return
        self.execute("BEGIN")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._rollback_quietly()
            raise
        else:
            self.execute("COMMIT")
        finally:
            self._in_transaction = False

    def _rollback_quietly(self) -> None:
        """Roll back without masking the error that caused it."""
        if self._conn.closed:
            return
        try:
            self.execute("ROLLBACK")
        except psycopg2.Error as e:
            logger.warning(f"[PostgresDriver] Rollback failed: {e}")

    def backup(self, label: str) -> str:
        self._backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = self._backup_dir / f"pg_{label}_{timestamp}.sql"
        logger.info(f"[PostgresDriver] Running {self._pg_dump} -> {path}")
        result = subprocess.run(
            [self._pg_dump, "--dbname", self._dsn, "--file", str(path)],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise BackupFailed(f"pg_dump exited with {result.returncode}: {result.stderr.strip()}")
        return str(path)

    def close(self) -> None:
        self._conn.close()


def create_driver(database_url: str, dialect, backup_directory: str = "./backups") -> IDatabaseDriver:
    """Open a driver for ``database_url`` (``sqlite:///path`` or a PostgreSQL DSN)."""
    dialect = Dialect.parse(dialect)
    if dialect is Dialect.SQLITE:
        path = database_url or ":memory:"
        for prefix in ("sqlite:///", "sqlite://"):
            if path.startswith(prefix):
                path = path[len(prefix):] or ":memory:"
                break
        return SqliteDriver(path, backup_directory)
    if dialect is Dialect.POSTGRES:
        if not database_url:
            raise ConfigurationError("database_url is required for postgres")
        return PostgresDriver(database_url, backup_directory)
    raise ConfigurationError(f"No bundled driver for dialect '{dialect.value}'; plan with --dry-run instead")
