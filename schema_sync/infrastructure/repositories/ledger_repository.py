import json
import logging
from datetime import datetime
from typing import List, Optional

from schema_sync.domain.entities.history import ExecutionLogEntry, MigrationRecord, MigrationStatus
from schema_sync.domain.exceptions import MigrationLocked
from schema_sync.domain.repositories.interfaces import IDatabaseDriver, ILedgerStore

logger = logging.getLogger(__name__)

LOCK_NAME = "schema_sync"
_COLUMNS = "id, checksum, statements, dialect, status, created_at, applied_at, execution_log, description"


class SqlLedgerRepository(ILedgerStore):
    """
    Ledger store persisted in the target database.
    Single Responsibility: Data access for migration history.
    """

    def __init__(self, driver: IDatabaseDriver, history_table: str = "schema_sync_history", clock=datetime.now):
        self._driver = driver
        self._table = history_table
        self._lock_table = f"{history_table}_lock"
        self._clock = clock

    @property
    def table_names(self) -> List[str]:
        return [self._table, self._lock_table]

    def ensure_storage(self) -> None:
        self._driver.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                id VARCHAR(64) PRIMARY KEY,
                checksum VARCHAR(64) NOT NULL,
                statements TEXT NOT NULL,
                dialect VARCHAR(16) NOT NULL,
                status VARCHAR(16) NOT NULL,
                created_at VARCHAR(32) NOT NULL,
                applied_at VARCHAR(32),
                execution_log TEXT NOT NULL,
                description TEXT
            )
        """)
        self._driver.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._lock_table} (
                lock_name VARCHAR(64) PRIMARY KEY,
                holder VARCHAR(255) NOT NULL,
                acquired_at VARCHAR(32) NOT NULL
            )
        """)
        logger.debug(f"[SqlLedgerRepository] Storage ready in {self._table}")

    def insert(self, record: MigrationRecord) -> None:
        p = self._driver.placeholder
        self._driver.execute(
            f"INSERT INTO {self._table} ({_COLUMNS}) VALUES ({', '.join([p] * 9)})",
            self._to_row(record),
        )

    def update(self, record: MigrationRecord) -> None:
        p = self._driver.placeholder
        row = self._to_row(record)
        self._driver.execute(
            f"UPDATE {self._table} SET checksum = {p}, statements = {p}, dialect = {p}, status = {p}, "
            f"created_at = {p}, applied_at = {p}, execution_log = {p}, description = {p} WHERE id = {p}",
            row[1:] + row[:1],
        )

    def get(self, record_id: str) -> Optional[MigrationRecord]:
        rows = self._select(f"WHERE id = {self._driver.placeholder}", (record_id,))
        return rows[0] if rows else None

    def list_records(self, status: Optional[MigrationStatus] = None) -> List[MigrationRecord]:
        if status is None:
            return self._select("", ())
        return self._select(f"WHERE status = {self._driver.placeholder}", (MigrationStatus(status).value,))

    def find_by_checksum(self, checksum: str) -> List[MigrationRecord]:
        return self._select(f"WHERE checksum = {self._driver.placeholder}", (checksum,))

    def acquire_lock(self, holder: str, timeout_seconds: int) -> None:
        """
        Take the advisory lock, or refresh it when ``holder`` already has it.

        Every write is conditional: the insert only lands when no row exists
        and the takeover only lands when the row still holds what was read,
        so two processes racing for the lock cannot both win.
        """
        p = self._driver.placeholder
        now = self._clock().isoformat()
        with self._driver.transaction():
            inserted = self._driver.execute(
                f"INSERT INTO {self._lock_table} (lock_name, holder, acquired_at) VALUES ({p}, {p}, {p}) "
                f"ON CONFLICT (lock_name) DO NOTHING",
                (LOCK_NAME, holder, now),
            )
            if inserted == 1:
                return
            current, acquired_at = self._read_lock()
            if current is None:
                # released between our insert and read; the caller may retry
                raise MigrationLocked("unknown", "")
            age = (datetime.fromisoformat(now) - datetime.fromisoformat(acquired_at)).total_seconds()
            if current != holder and age < timeout_seconds:
                raise MigrationLocked(current, acquired_at)
            if current != holder:
                logger.warning(
                    f"[SqlLedgerRepository] Reclaiming lock from {current} held for {age:.0f}s "
                    f"(timeout {timeout_seconds}s)"
                )
            swapped = self._driver.execute(
                f"UPDATE {self._lock_table} SET holder = {p}, acquired_at = {p} "
                f"WHERE lock_name = {p} AND holder = {p} AND acquired_at = {p}",
                (holder, now, LOCK_NAME, current, acquired_at),
            )
            if swapped != 1:
                winner, won_at = self._read_lock()
                logger.warning(f"[SqlLedgerRepository] Lost lock race to {winner}")
                raise MigrationLocked(winner or "unknown", won_at or "")

    def _read_lock(self):
        rows = self._driver.fetchall(
            f"SELECT holder, acquired_at FROM {self._lock_table} WHERE lock_name = {self._driver.placeholder}",
            (LOCK_NAME,),
        )
        return rows[0] if rows else (None, None)

    def release_lock(self, holder: str) -> None:
        p = self._driver.placeholder
        self._driver.execute(
            f"DELETE FROM {self._lock_table} WHERE lock_name = {p} AND holder = {p}", (LOCK_NAME, holder)
        )

    def _select(self, where: str, params) -> List[MigrationRecord]:
        rows = self._driver.fetchall(f"SELECT {_COLUMNS} FROM {self._table} {where} ORDER BY created_at, id", params)
        return [self._from_row(row) for row in rows]

    @staticmethod
    def _to_row(record: MigrationRecord) -> tuple:
        return (
            record.id,
            record.checksum,
            json.dumps(list(record.statements)),
            record.dialect,
            record.status.value,
            record.created_at.isoformat() if record.created_at else datetime.now().isoformat(),
            record.applied_at.isoformat() if record.applied_at else None,
            json.dumps([entry.to_dict() for entry in record.execution_log]),
            record.description,
        )

    @staticmethod
    def _from_row(row) -> MigrationRecord:
        record_id, checksum, statements, dialect, status, created_at, applied_at, log, description = row
        return MigrationRecord(
            id=record_id,
            checksum=checksum,
            statements=tuple(json.loads(statements)),
            dialect=dialect,
            status=MigrationStatus(status),
            created_at=datetime.fromisoformat(created_at) if created_at else None,
            applied_at=datetime.fromisoformat(applied_at) if applied_at else None,
            execution_log=[ExecutionLogEntry.from_dict(entry) for entry in json.loads(log or "[]")],
            description=description or "",
        )
